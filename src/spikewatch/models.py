"""Data models for spikewatch."""

from dataclasses import dataclass, field
from enum import Enum


class ThreadState(Enum):
    """Execution state of a thread at capture time."""

    NEW = "NEW"
    RUNNABLE = "RUNNABLE"
    BLOCKED = "BLOCKED"
    WAITING = "WAITING"
    TIMED_WAITING = "TIMED_WAITING"
    TERMINATED = "TERMINATED"


@dataclass(slots=True, frozen=True)
class LockInfo:
    """Descriptor of a lock object."""

    class_name: str
    identity: int

    def __str__(self) -> str:
        return f"{self.class_name}@{self.identity:x}"


@dataclass(slots=True, frozen=True)
class MonitorInfo:
    """A lock held by a thread, acquired at a given stack depth."""

    lock: LockInfo
    stack_depth: int  # index into ThreadSnapshot.stack, innermost first

    def __str__(self) -> str:
        return str(self.lock)


@dataclass(slots=True, frozen=True)
class ThreadSnapshot:
    """Immutable capture of one thread at one instant."""

    name: str
    ident: int
    state: ThreadState
    stack: tuple[str, ...] = ()  # innermost frame first
    lock: LockInfo | None = None
    lock_owner_name: str | None = None
    lock_owner_id: int | None = None
    suspended: bool = False
    in_native: bool = False
    locked_monitors: tuple[MonitorInfo, ...] = field(default_factory=tuple)
    locked_synchronizers: tuple[LockInfo, ...] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class Requester:
    """Whoever asked for a detection session.

    A headless requester (a server console, a script) still gets the start and
    finish messages but no per-spike notification.
    """

    name: str
    headless: bool = False
