"""Lag spike monitor a host process embeds."""

from spikewatch.collector import ThreadSnapshotCollector
from spikewatch.config import DetectorConfig
from spikewatch.detector import LagSpikeDetector, Session
from spikewatch.heartbeat import HeartbeatRegister
from spikewatch.host import HostLiveness, LoggingOutputSink, OutputSink, ProcessLiveness
from spikewatch.introspection import ThreadIntrospector
from spikewatch.models import Requester
from spikewatch.session import SessionController


class LagSpikeMonitor:
    """
    Wires heartbeat, detector and session control together.

    The host calls ``tick()`` once per cycle of its main loop and ``start()``
    when an operator asks for a detection session. Detection runs in a
    separate daemon thread and ends on its own when the session expires.
    """

    def __init__(
        self,
        config: DetectorConfig | None = None,
        liveness: HostLiveness | None = None,
        output: OutputSink | None = None,
        introspector: ThreadIntrospector | None = None,
        **detector_kwargs,
    ) -> None:
        """
        Initialize the LagSpikeMonitor.

        Args:
            config: Detection tunables. Defaults to ``DetectorConfig.from_env()``.
            liveness: Host lifecycle queries. Defaults to this process via psutil.
            output: Operator channel. Defaults to logging the messages.
            introspector: Thread introspection backend. Defaults to the running interpreter.
            **detector_kwargs: Passed to ``LagSpikeDetector`` (clock, sleep, log, noise_filter).
        """
        self.config = config or DetectorConfig.from_env()
        self.heartbeat = HeartbeatRegister()
        self._output = output or LoggingOutputSink()
        self.detector = LagSpikeDetector(
            self.heartbeat,
            ThreadSnapshotCollector(introspector, self.config.main_thread_prefix),
            liveness or ProcessLiveness(),
            self._output,
            self.config,
            **detector_kwargs,
        )
        self._sessions = SessionController(self.detector, self._output)

    @property
    def is_running(self) -> bool:
        """Check if a detection session is active."""
        return self._sessions.is_active

    @property
    def session(self) -> Session | None:
        return self._sessions.session

    @property
    def include_all(self) -> bool:
        return self.detector.include_all

    @include_all.setter
    def include_all(self, value: bool) -> None:
        self.detector.include_all = value

    def tick(self, timestamp_ns: int | None = None) -> None:
        """Record one cycle of the monitored loop."""
        self.heartbeat.record_tick(timestamp_ns)

    def start(self, requester: Requester | None = None, seconds: int | None = None) -> bool:
        """Start a detection session; see ``SessionController.start``."""
        return self._sessions.start(requester, seconds or self.config.default_duration_seconds)

    def wake(self) -> None:
        self.detector.wake()

    def join(self, timeout: float | None = 5.0) -> None:
        self._sessions.join(timeout)
