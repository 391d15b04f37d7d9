"""spikewatch - Textual operator console."""

import logging
import os
import time
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import Footer, Log, Static

from spikewatch.config import DetectorConfig
from spikewatch.detector import DetectorState
from spikewatch.host import CallbackLiveness
from spikewatch.models import Requester
from spikewatch.monitor import LagSpikeMonitor

FREEZE_SECONDS = 1.0
TICK_INTERVAL = 0.05


class QueueLogHandler(logging.Handler):
    """Logging handler that hands formatted records to the UI thread."""

    def __init__(self, queue: Queue[str], level: int = logging.INFO) -> None:
        super().__init__(level)
        self._queue = queue

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._queue.put_nowait(self.format(record))
        except Exception:
            self.handleError(record)


class QueueOutputSink:
    """Output sink for the console. Never blocks the detector thread."""

    def __init__(self, queue: Queue[str]) -> None:
        self._queue = queue

    def send_text(self, requester: Requester | None, message: str) -> None:
        self._queue.put_nowait(message)


def format_age(age_ns: int | None) -> str:
    """Format a heartbeat age for display."""
    if age_ns is None:
        return "never"
    ms = age_ns / 1_000_000
    if ms < 1000:
        return f"{ms:5.0f}ms"
    return f"{ms / 1000:5.1f}s"


class StatusPanel(Static):
    """Header widget showing detector state."""

    DEFAULT_CSS = """
    StatusPanel {
        height: auto;
        min-height: 4;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize StatusPanel."""
        super().__init__(*args, **kwargs)
        self._state = DetectorState.IDLE
        self._remaining_seconds = 0.0
        self._heartbeat_age: int | None = None
        self._reports = 0
        self._include_all = False
        self._threshold_ms = 0

    def compose(self) -> ComposeResult:
        yield Static(self._get_status(), id="status-text")

    def update_status(self, monitor: LagSpikeMonitor) -> None:
        """Pull the current values from the monitor."""
        now = time.monotonic_ns()
        session = monitor.session
        if session is None:
            self._state = DetectorState.IDLE
            self._remaining_seconds = 0.0
            self._reports = 0
        else:
            self._state = session.state
            self._remaining_seconds = max(0.0, (session.stop_time_ns - now) / 1e9)
            self._reports = session.reports
        last_tick = monitor.heartbeat.current()
        self._heartbeat_age = None if last_tick is None else now - last_tick
        self._include_all = monitor.include_all
        self._threshold_ms = monitor.config.threshold_ms
        self._refresh_display()

    def _refresh_display(self) -> None:
        try:
            self.query_one("#status-text", Static).update(self._get_status())
        except Exception:
            pass  # Widget not mounted yet

    def _get_status(self) -> str:
        state_colour = {
            DetectorState.IDLE: "dim",
            DetectorState.POLLING: "green",
            DetectorState.SPIKE_LATCHED: "red",
            DetectorState.FINISHED: "yellow",
        }[self._state]
        verbosity = "all threads" if self._include_all else "main loop only"
        remaining = f"{self._remaining_seconds:.0f}s left" if self._state is not DetectorState.IDLE else ""
        return (
            f"Session: [{state_colour}]{self._state.value}[/{state_colour}] {remaining}\n"
            f"Last tick: {format_age(self._heartbeat_age)} ago "
            f"(threshold {self._threshold_ms}ms)\n"
            f"Spikes reported: {self._reports}   Capture: {verbosity}"
        )


class ReportView(Container):
    """Container for the report log."""

    DEFAULT_CSS = """
    ReportView {
        height: 1fr;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        yield Log(id="report-log")

    def append(self, text: str) -> None:
        self.query_one("#report-log", Log).write_lines(text.splitlines())


class SpikewatchApp(App):
    """Main spikewatch application. Its own event loop is the monitored loop."""

    TITLE = "spikewatch"
    SUB_TITLE = "Lag Spike Detector"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status {
        dock: top;
        height: auto;
        min-height: 5;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("s", "start", "Start session"),
        ("a", "toggle_all", "All threads"),
        ("f", "freeze", "Freeze loop"),
    ]

    def __init__(self, config: DetectorConfig | None = None) -> None:
        """Initialize the SpikewatchApp."""
        super().__init__()
        self._messages: Queue[str] = Queue()
        self._quitting = False
        self._requester = Requester("console")
        self._log_handler = QueueLogHandler(self._messages)
        self._log_handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        self._monitor = LagSpikeMonitor(
            config=config,
            liveness=CallbackLiveness(
                lambda: self.is_running and not self._quitting,
                lambda: self._quitting,
            ),
            output=QueueOutputSink(self._messages),
        )

    def compose(self) -> ComposeResult:
        yield StatusPanel(id="status")
        yield ReportView()
        yield Footer()

    def on_mount(self) -> None:
        """Attach the log handler and start ticking the heartbeat."""
        logging.getLogger("spikewatch").addHandler(self._log_handler)
        self._monitor.tick()
        self.set_interval(TICK_INTERVAL, self._monitor.tick)
        self.set_interval(0.25, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain queued messages and refresh the status panel."""
        lines = []
        while True:
            try:
                lines.append(self._messages.get_nowait())
            except Empty:
                break

        try:
            if lines:
                self.query_one(ReportView).append("\n".join(lines))
            self.query_one("#status", StatusPanel).update_status(self._monitor)
        except Exception:
            pass  # Screen is being torn down

    def action_start(self) -> None:
        """Start a detection session of the configured default length."""
        if self._monitor.start(self._requester):
            self.notify(f"Detecting for {self._monitor.config.default_duration_seconds}s")
        else:
            self.notify("Already detecting", severity="warning")

    def action_toggle_all(self) -> None:
        """Switch between main-loop-only and all-thread capture."""
        self._monitor.include_all = not self._monitor.include_all
        self.notify("Capture: all threads" if self._monitor.include_all else "Capture: main loop")

    def action_freeze(self) -> None:
        """Block the event loop long enough to trigger a spike."""
        time.sleep(FREEZE_SECONDS)

    def action_quit(self) -> None:
        """Handle quit action."""
        self._quitting = True
        logging.getLogger("spikewatch").removeHandler(self._log_handler)
        self._monitor.wake()
        self.exit()


def main() -> None:
    """Entry point for the spikewatch console."""
    logging.basicConfig(
        filename=os.getenv("SPIKEWATCH_LOG_FILE", "spikewatch.log"),
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = SpikewatchApp(DetectorConfig.from_env())
    app.run()


if __name__ == "__main__":
    main()
