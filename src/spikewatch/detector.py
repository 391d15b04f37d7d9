"""Lag spike detection state machine."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from spikewatch.collector import ThreadSnapshotCollector
from spikewatch.config import DetectorConfig
from spikewatch.heartbeat import HeartbeatRegister
from spikewatch.host import HostLiveness, OutputSink
from spikewatch.models import Requester
from spikewatch.report import IdleThreadFilter, NoiseFilter, Report, build_report, format_spike_message

logger = logging.getLogger(__name__)

SPIKE_NOTICE = "Lag spike detected. See console/log for more information."


class DetectorState(Enum):
    """Lifecycle of one detection session."""

    IDLE = "idle"
    POLLING = "polling"
    SPIKE_LATCHED = "spike_latched"
    FINISHED = "finished"


@dataclass(slots=True)
class Session:
    """One bounded detection run."""

    requester: Requester | None
    stop_time_ns: int
    state: DetectorState = DetectorState.POLLING
    reports: int = 0
    last_report: Report | None = None
    error: BaseException | None = None

    @property
    def latched(self) -> bool:
        return self.state is DetectorState.SPIKE_LATCHED

    @property
    def finished(self) -> bool:
        return self.state is DetectorState.FINISHED


class LagSpikeDetector:
    """
    Compares the clock against the heartbeat once per poll and reports stalls.

    A stall is reported once: the session latches until the dead time drops
    back under the threshold, after which a new stall reports again. Time and
    sleeping are injectable so the state machine can be driven without real
    timers.
    """

    def __init__(
        self,
        heartbeat: HeartbeatRegister,
        collector: ThreadSnapshotCollector,
        liveness: HostLiveness,
        output: OutputSink,
        config: DetectorConfig | None = None,
        noise_filter: NoiseFilter | None = None,
        log: logging.Logger | None = None,
        clock: Callable[[], int] = time.monotonic_ns,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.config = config or DetectorConfig()
        self.include_all = self.config.all_threads
        self._heartbeat = heartbeat
        self._collector = collector
        self._liveness = liveness
        self._output = output
        self._noise_filter = noise_filter or IdleThreadFilter(
            self.config.idle_frame_patterns,
            self.config.run_frame_marker,
            self.config.max_run_frames,
            self.config.idle_innermost_patterns,
        )
        self._log = log or logger
        self._clock = clock
        self._wake_event = threading.Event()
        self._sleep = sleep or self._wait

    def new_session(self, requester: Requester | None, seconds: int) -> Session:
        return Session(requester=requester, stop_time_ns=self._clock() + seconds * 1_000_000_000)

    def wake(self) -> None:
        """Cut the current sleep short. The loop carries on as if it had elapsed."""
        self._wake_event.set()

    def _wait(self, seconds: float) -> None:
        # only consume a wake that ended this wait; a later one carries to the next
        if self._wake_event.wait(timeout=seconds):
            self._wake_event.clear()

    def run(self, session: Session) -> None:
        """Poll until the session finishes. Exceptions propagate to the caller."""
        interval = self.config.poll_interval_ms / 1000
        while self.poll(session) is not DetectorState.FINISHED:
            self._sleep(interval)

    def poll(self, session: Session) -> DetectorState:
        """Evaluate one poll tick and return the session's new state."""
        now = self._clock()
        if now > session.stop_time_ns:
            session.state = DetectorState.FINISHED
            return session.state

        last_tick = self._heartbeat.current()
        if last_tick is None:
            # the loop has not ticked yet; nothing to compare against
            session.state = DetectorState.POLLING
            return session.state

        dead_ns = now - last_tick
        if dead_ns < self.config.threshold_ns:
            session.state = DetectorState.POLLING
            return session.state

        if session.latched:
            return session.state

        if not self._liveness.is_running() or self._liveness.is_stopped():
            self._log.info("Host is not running, ending lag spike detection")
            session.state = DetectorState.FINISHED
            return session.state

        session.state = DetectorState.SPIKE_LATCHED
        self.handle_spike(session, dead_ns)
        return session.state

    def handle_spike(self, session: Session, dead_ns: int) -> None:
        collection = self._collector.collect(self.include_all)
        report = build_report(collection, self._noise_filter)
        session.last_report = report
        session.reports += 1

        self._log.error(format_spike_message(dead_ns, report))

        requester = session.requester
        if requester is not None and not requester.headless:
            self._output.send_text(requester, SPIKE_NOTICE)
        self._sleep(self.config.cooldown_seconds)
