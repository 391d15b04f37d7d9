"""
Thread introspection backends.

The collector talks to an abstract ``ThreadIntrospector`` so it can be driven
by a fake in tests. ``RuntimeIntrospector`` is the real backend: it reads
interpreter frames for stacks and a ``LockRegistry`` for lock ownership, which
Python does not track for plain ``threading`` locks.
"""

import logging
import os
import sys
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from types import FrameType

from spikewatch.models import LockInfo, MonitorInfo, ThreadSnapshot, ThreadState

logger = logging.getLogger(__name__)


class ThreadIntrospector(ABC):
    """Capability to enumerate threads, read their stacks and locks, and find deadlocks."""

    @abstractmethod
    def find_deadlocked_threads(self) -> tuple[int, ...]:
        """Return ids of threads in a deadlock cycle, or an empty tuple."""

    @abstractmethod
    def thread_info(
        self,
        thread_ids: Iterable[int],
        locked_monitors: bool,
        locked_synchronizers: bool,
    ) -> list[ThreadSnapshot]:
        """Capture the given threads. Threads that no longer exist are skipped."""

    @abstractmethod
    def dump_all_threads(
        self,
        locked_monitors: bool,
        locked_synchronizers: bool,
    ) -> list[ThreadSnapshot]:
        """Capture every live thread."""


def format_frame(frame: FrameType) -> str:
    """Render one frame as ``module.qualname(file.py:lineno)``."""
    code = frame.f_code
    module = frame.f_globals.get("__name__", "?")
    qualname = getattr(code, "co_qualname", code.co_name)
    filename = os.path.basename(code.co_filename)
    return f"{module}.{qualname}({filename}:{frame.f_lineno})"


def walk_stack(frame: FrameType | None) -> list[FrameType]:
    """Return frames from ``frame`` outwards, innermost first."""
    frames = []
    while frame is not None:
        frames.append(frame)
        frame = frame.f_back
    return frames


class LockRegistry:
    """
    Ownership and wait-for bookkeeping for tracked locks.

    Every method takes the registry's own mutex, so the bookkeeping of a lock
    is never observed half-updated.
    """

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        # lock id -> (owner thread id, depth of the acquiring frame from the bottom of the stack)
        self._owners: dict[int, tuple[int, int]] = {}
        self._locks: dict[int, "TrackedLock"] = {}
        # thread id -> lock id it is blocked on
        self._waiting: dict[int, int] = {}

    def begin_wait(self, lock: "TrackedLock") -> None:
        with self._mutex:
            self._waiting[threading.get_ident()] = id(lock)
            self._locks[id(lock)] = lock

    def end_wait(self) -> None:
        with self._mutex:
            lid = self._waiting.pop(threading.get_ident(), None)
            if lid is not None:
                self._forget(lid)

    def acquired(self, lock: "TrackedLock", depth: int) -> None:
        with self._mutex:
            self._owners[id(lock)] = (threading.get_ident(), depth)
            self._locks[id(lock)] = lock

    def released(self, lock: "TrackedLock") -> None:
        with self._mutex:
            self._owners.pop(id(lock), None)
            self._forget(id(lock))

    def _forget(self, lid: int) -> None:
        # caller holds self._mutex
        if lid not in self._owners and lid not in self._waiting.values():
            self._locks.pop(lid, None)

    def waiting_on(self) -> dict[int, "TrackedLock"]:
        """Map of blocked thread id to the lock it waits for."""
        with self._mutex:
            return {tid: self._locks[lid] for tid, lid in self._waiting.items() if lid in self._locks}

    def owner_of(self, lock: "TrackedLock") -> int | None:
        with self._mutex:
            entry = self._owners.get(id(lock))
        return entry[0] if entry else None

    def held_by(self, thread_id: int) -> list[tuple["TrackedLock", int]]:
        """Locks owned by ``thread_id`` with their acquire depth."""
        with self._mutex:
            return [
                (self._locks[lid], depth)
                for lid, (owner, depth) in self._owners.items()
                if owner == thread_id and lid in self._locks
            ]

    def find_cycles(self) -> tuple[int, ...]:
        """Return ids of threads on a cycle of the wait-for graph."""
        with self._mutex:
            edges: dict[int, int] = {}
            for tid, lid in self._waiting.items():
                entry = self._owners.get(lid)
                if entry is not None:
                    edges[tid] = entry[0]

        deadlocked: set[int] = set()
        for start in edges:
            seen: list[int] = []
            current: int | None = start
            while current is not None and current not in seen:
                seen.append(current)
                current = edges.get(current)
            if current is not None:
                # current is the first thread revisited; everything after it in seen is the cycle
                deadlocked.update(seen[seen.index(current):])
        return tuple(sorted(deadlocked))


default_registry = LockRegistry()


class TrackedLock:
    """
    Drop-in ``threading.Lock`` whose ownership is visible to spikewatch.

    Held tracked locks show up as ``locked <lock>`` at the frame that acquired
    them, and threads blocked on one are reported as BLOCKED with the owner.
    """

    kind = "TrackedLock"

    def __init__(self, registry: LockRegistry | None = None) -> None:
        self._registry = registry or default_registry
        self._lock = self._make_lock()

    def _make_lock(self):
        return threading.Lock()

    @property
    def info(self) -> LockInfo:
        return LockInfo(self.kind, id(self))

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        if self._lock.acquire(blocking=False):
            self._on_acquired()
            return True
        if not blocking:
            return False
        self._registry.begin_wait(self)
        try:
            got = self._lock.acquire(True, timeout)
        finally:
            self._registry.end_wait()
        if got:
            self._on_acquired()
        return got

    def _on_acquired(self) -> None:
        self._registry.acquired(self, _caller_depth())

    def release(self) -> None:
        self._registry.released(self)
        self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> bool:
        return self.acquire()

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"<{self.info}>"


class TrackedRLock(TrackedLock):
    """Reentrant tracked lock, reported as an ownable synchronizer."""

    kind = "TrackedRLock"

    def __init__(self, registry: LockRegistry | None = None) -> None:
        super().__init__(registry)
        self._count = 0

    def _make_lock(self):
        return threading.RLock()

    def _on_acquired(self) -> None:
        self._count += 1
        if self._count == 1:
            super()._on_acquired()

    def release(self) -> None:
        # ownership is checked before any bookkeeping changes
        if not self._lock._is_owned():
            raise RuntimeError("cannot release un-acquired lock")
        self._count -= 1
        if self._count == 0:
            self._registry.released(self)
        self._lock.release()

    def locked(self) -> bool:
        return self._count > 0


class RuntimeIntrospector(ThreadIntrospector):
    """Introspects the threads of the running interpreter."""

    def __init__(self, registry: LockRegistry | None = None) -> None:
        self._registry = registry or default_registry

    def find_deadlocked_threads(self) -> tuple[int, ...]:
        return self._registry.find_cycles()

    def thread_info(self, thread_ids, locked_monitors, locked_synchronizers):
        wanted = set(thread_ids)
        return [
            snapshot
            for snapshot in self.dump_all_threads(locked_monitors, locked_synchronizers)
            if snapshot.ident in wanted
        ]

    def dump_all_threads(self, locked_monitors, locked_synchronizers):
        frames = sys._current_frames()
        threads = {t.ident: t for t in threading.enumerate() if t.ident is not None}
        names = {ident: t.name for ident, t in threads.items()}
        waiting = self._registry.waiting_on()

        snapshots = []
        for ident, thread in threads.items():
            frame = frames.get(ident)
            snapshots.append(
                self._snapshot(
                    ident,
                    thread.name,
                    frame,
                    names,
                    waiting,
                    locked_monitors,
                    locked_synchronizers,
                )
            )
        return snapshots

    def _snapshot(
        self,
        ident: int,
        name: str,
        frame: FrameType | None,
        names: dict[int, str],
        waiting: dict[int, TrackedLock],
        locked_monitors: bool,
        locked_synchronizers: bool,
    ) -> ThreadSnapshot:
        stack_frames = walk_stack(frame)
        stack = tuple(format_frame(f) for f in stack_frames)

        state = ThreadState.RUNNABLE if stack_frames else ThreadState.NEW
        lock: LockInfo | None = None
        owner_id: int | None = None

        blocked_on = waiting.get(ident)
        if blocked_on is not None:
            state = ThreadState.BLOCKED
            lock = blocked_on.info
            owner_id = self._registry.owner_of(blocked_on)
        elif stack_frames and _is_condition_wait(stack_frames[0]):
            locals_ = stack_frames[0].f_locals
            state = ThreadState.WAITING if locals_.get("timeout") is None else ThreadState.TIMED_WAITING
            condition = locals_.get("self")
            if condition is not None:
                lock = LockInfo(type(condition).__name__, id(condition))

        monitors: list[MonitorInfo] = []
        synchronizers: list[LockInfo] = []
        if locked_monitors or locked_synchronizers:
            for held, depth in self._registry.held_by(ident):
                if isinstance(held, TrackedRLock):
                    if locked_synchronizers:
                        synchronizers.append(held.info)
                elif locked_monitors:
                    index = len(stack_frames) - depth
                    if 0 <= index < len(stack_frames):
                        monitors.append(MonitorInfo(held.info, index))
                    else:
                        logger.debug("Lock %s held by %s outside its visible stack", held.info, name)

        return ThreadSnapshot(
            name=name,
            ident=ident,
            state=state,
            stack=stack,
            lock=lock,
            lock_owner_name=names.get(owner_id) if owner_id is not None else None,
            lock_owner_id=owner_id,
            locked_monitors=tuple(monitors),
            locked_synchronizers=tuple(synchronizers),
        )


def _caller_depth() -> int:
    """Depth, counted from the bottom of the stack, of the first frame outside this module."""
    frame = sys._getframe(1)
    while frame is not None and frame.f_globals.get("__name__") == __name__:
        frame = frame.f_back
    return len(walk_stack(frame))


def _is_condition_wait(frame: FrameType) -> bool:
    code = frame.f_code
    return (
        code.co_name == "wait"
        and os.path.basename(code.co_filename) == "threading.py"
        and type(frame.f_locals.get("self")).__name__ == "Condition"
    )
