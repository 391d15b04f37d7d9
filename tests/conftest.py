"""Shared fakes for spikewatch tests."""

import pytest

from spikewatch.collector import ThreadSnapshotCollector
from spikewatch.config import DetectorConfig
from spikewatch.detector import LagSpikeDetector
from spikewatch.heartbeat import HeartbeatRegister
from spikewatch.introspection import ThreadIntrospector
from spikewatch.models import ThreadSnapshot, ThreadState


class FakeClock:
    """Monotonic nanosecond clock that only moves when slept on."""

    def __init__(self, start_ns: int = 1_000_000_000_000) -> None:
        self.now_ns = start_ns
        self.start_ns = start_ns
        self.sleeps: list[float] = []
        self.on_sleep = None

    def __call__(self) -> int:
        return self.now_ns

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now_ns += int(seconds * 1_000_000_000)
        if self.on_sleep is not None:
            self.on_sleep(self)

    def elapsed(self) -> float:
        return (self.now_ns - self.start_ns) / 1e9


class FakeIntrospector(ThreadIntrospector):
    """Introspector returning canned snapshots."""

    def __init__(self, snapshots=(), deadlocked=()) -> None:
        self.snapshots = list(snapshots)
        self.deadlocked = tuple(deadlocked)
        self.dump_calls: list[tuple[bool, bool]] = []
        self.info_calls: list[tuple[tuple[int, ...], bool, bool]] = []

    def find_deadlocked_threads(self):
        return self.deadlocked

    def thread_info(self, thread_ids, locked_monitors, locked_synchronizers):
        ids = tuple(thread_ids)
        self.info_calls.append((ids, locked_monitors, locked_synchronizers))
        return [s for s in self.snapshots if s.ident in ids]

    def dump_all_threads(self, locked_monitors, locked_synchronizers):
        self.dump_calls.append((locked_monitors, locked_synchronizers))
        return list(self.snapshots)


class RecordingOutput:
    """Output sink that remembers what it was sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[object, str]] = []

    def send_text(self, requester, message: str) -> None:
        self.sent.append((requester, message))

    @property
    def messages(self) -> list[str]:
        return [message for _, message in self.sent]


class FakeLiveness:
    def __init__(self, running: bool = True, stopped: bool = False) -> None:
        self.running = running
        self.stopped = stopped
        self.calls = 0

    def is_running(self) -> bool:
        self.calls += 1
        return self.running

    def is_stopped(self) -> bool:
        return self.stopped


def make_snapshot(name: str = "MainThread", ident: int = 1, **kwargs) -> ThreadSnapshot:
    kwargs.setdefault("state", ThreadState.RUNNABLE)
    kwargs.setdefault("stack", ("app.loop(app.py:10)", "threading.Thread.run(threading.py:1010)"))
    return ThreadSnapshot(name=name, ident=ident, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def heartbeat() -> HeartbeatRegister:
    return HeartbeatRegister()


@pytest.fixture
def introspector() -> FakeIntrospector:
    return FakeIntrospector([make_snapshot()])


@pytest.fixture
def output() -> RecordingOutput:
    return RecordingOutput()


@pytest.fixture
def liveness() -> FakeLiveness:
    return FakeLiveness()


@pytest.fixture
def make_detector(clock, heartbeat, introspector, output, liveness):
    """Build a detector on the fake clock; keyword arguments override config fields."""

    def _make(**config_fields) -> LagSpikeDetector:
        config = DetectorConfig(**config_fields)
        return LagSpikeDetector(
            heartbeat,
            ThreadSnapshotCollector(introspector, config.main_thread_prefix),
            liveness,
            output,
            config,
            clock=clock,
            sleep=clock.sleep,
        )

    return _make
