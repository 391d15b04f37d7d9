"""Single-session control for lag spike detection."""

import logging
import threading

from spikewatch.detector import DetectorState, LagSpikeDetector, Session
from spikewatch.host import OutputSink
from spikewatch.models import Requester

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "Lag spike profiling is already in progress"
FINISHED = "Lag spike profiling finished."


class SessionController:
    """
    Owns the process-wide "a session is running" flag.

    ``try_acquire`` and ``release`` are atomic under one lock, and a session's
    worker releases the flag before any later ``start`` can succeed.
    """

    def __init__(
        self,
        detector: LagSpikeDetector,
        output: OutputSink,
        log: logging.Logger | None = None,
    ) -> None:
        self._detector = detector
        self._output = output
        self._log = log or logger
        self._guard = threading.Lock()
        self._in_progress = False
        self._session: Session | None = None
        self._thread: threading.Thread | None = None

    @property
    def is_active(self) -> bool:
        with self._guard:
            return self._in_progress

    @property
    def session(self) -> Session | None:
        """The running session, or the last one to run."""
        return self._session

    def try_acquire(self) -> bool:
        with self._guard:
            if self._in_progress:
                return False
            self._in_progress = True
            return True

    def release(self) -> None:
        with self._guard:
            self._in_progress = False

    def start(self, requester: Requester | None, seconds: int) -> bool:
        """
        Start a detection session of ``seconds`` seconds.

        Returns False, after telling the requester, if a session is already running.
        """
        if seconds <= 0:
            raise ValueError(f"seconds must be > 0, got {seconds}")
        if not self.try_acquire():
            self._output.send_text(requester, ALREADY_RUNNING)
            return False

        try:
            self._output.send_text(requester, f"Started lag spike detection for {seconds} seconds.")
            session = self._detector.new_session(requester, seconds)
            self._session = session
            self._thread = threading.Thread(
                target=self._run_session,
                args=(session,),
                daemon=True,
                name="Lag Spike Detector",
            )
            self._thread.start()
        except Exception:
            self.release()
            raise
        self._log.info("Started lag spike detection for %ds", seconds)
        return True

    def join(self, timeout: float | None = None) -> None:
        """Wait for the current session's worker to exit."""
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _run_session(self, session: Session) -> None:
        try:
            self._detector.run(session)
        except Exception as exc:
            self._log.error("Error detecting lag spikes", exc_info=True)
            session.error = exc
            session.state = DetectorState.FINISHED
            self.release()
            return

        self.release()
        self._log.info("Lag spike detection finished after %d report(s)", session.reports)
        if session.requester is not None:
            try:
                self._output.send_text(session.requester, FINISHED)
            except Exception:
                self._log.error("Error sending lag spike completion message", exc_info=True)
