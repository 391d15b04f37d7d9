"""
Rendering and deduplication of thread snapshots.

Threads whose rendered signature (state, lock context and stack, without
name or id) is identical are folded into one ``SignatureGroup``. Idle pool
workers are dropped by a pluggable noise filter before grouping.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from spikewatch.collector import ThreadCollection
from spikewatch.models import ThreadSnapshot, ThreadState

NoiseFilter = Callable[[ThreadSnapshot], bool]

UNKNOWN_NAME = "<unknown>"


def render_thread(snapshot: ThreadSnapshot, with_header: bool = False) -> str:
    """Render one thread in thread-dump form."""
    parts: list[str] = []
    if with_header:
        parts.append(f'"{snapshot.name or UNKNOWN_NAME}" Id={snapshot.ident} ')
    parts.append(snapshot.state.value)
    if snapshot.lock is not None:
        parts.append(f" on {snapshot.lock}")
    if snapshot.lock_owner_id is not None:
        owner = snapshot.lock_owner_name or UNKNOWN_NAME
        parts.append(f' owned by "{owner}" Id={snapshot.lock_owner_id}')
    if snapshot.suspended:
        parts.append(" (suspended)")
    if snapshot.in_native:
        parts.append(" (in native)")
    parts.append("\n")

    for depth, frame in enumerate(snapshot.stack):
        parts.append(f"\tat {frame}\n")
        if depth == 0 and snapshot.lock is not None:
            if snapshot.state is ThreadState.BLOCKED:
                parts.append(f"\t-  blocked on {snapshot.lock}\n")
            elif snapshot.state in (ThreadState.WAITING, ThreadState.TIMED_WAITING):
                parts.append(f"\t-  waiting on {snapshot.lock}\n")
        for monitor in snapshot.locked_monitors:
            if monitor.stack_depth == depth:
                parts.append(f"\t-  locked {monitor}\n")

    if snapshot.locked_synchronizers:
        parts.append(f"\n\tNumber of locked synchronizers = {len(snapshot.locked_synchronizers)}\n")
        for lock in snapshot.locked_synchronizers:
            parts.append(f"\t- {lock}\n")
    parts.append("\n")
    return "".join(parts)


class IdleThreadFilter:
    """
    Suppresses threads parked in an idle worker loop.

    A thread is idle when at most ``max_run_frames`` of its frames contain
    ``run_marker`` and either some frame contains one of ``idle_patterns`` or
    the innermost frame contains one of ``innermost_patterns``.

    ``innermost_patterns`` covers pool workers parked in a C-level queue get,
    which leaves the worker loop itself on top. A busy worker has its task on
    top and is kept.
    """

    def __init__(
        self,
        idle_patterns: Iterable[str] = ("queue.Queue.get(",),
        run_marker: str = ".run(",
        max_run_frames: int = 2,
        innermost_patterns: Iterable[str] = ("concurrent.futures.thread._worker(",),
    ) -> None:
        self.idle_patterns = tuple(idle_patterns)
        self.innermost_patterns = tuple(innermost_patterns)
        self.run_marker = run_marker
        self.max_run_frames = max_run_frames

    def __call__(self, snapshot: ThreadSnapshot) -> bool:
        runs = sum(1 for frame in snapshot.stack if self.run_marker in frame)
        if runs > self.max_run_frames:
            return False
        if snapshot.stack and any(p in snapshot.stack[0] for p in self.innermost_patterns):
            return True
        return any(
            pattern in frame for frame in snapshot.stack for pattern in self.idle_patterns
        )


def name_key(name: str) -> tuple[str, str]:
    """Case-insensitive sort key with a stable tie-break."""
    return name.lower(), name


@dataclass(slots=True, frozen=True)
class SignatureGroup:
    """Threads sharing one rendered signature."""

    signature: str
    names: tuple[str, ...]
    representative: ThreadSnapshot

    def render(self) -> str:
        quoted = '", "'.join(self.names)
        return f'"{quoted}" {self.signature}'


@dataclass(slots=True, frozen=True)
class Report:
    """A grouped dump, or the full detail of a deadlocked thread set."""

    groups: tuple[SignatureGroup, ...] = ()
    deadlocked: tuple[ThreadSnapshot, ...] = ()
    deadlocked_ids: tuple[int, ...] = ()

    @property
    def is_deadlock(self) -> bool:
        # the ids survive even if every deadlocked thread exited before capture
        return bool(self.deadlocked or self.deadlocked_ids)

    def render(self) -> str:
        if self.is_deadlock:
            body = "".join(render_thread(t, with_header=True) + "\n" for t in self.deadlocked)
            return "Definitely deadlocked: \n" + body
        return "\n".join(group.render() for group in self.groups)


def group_threads(
    snapshots: Iterable[ThreadSnapshot],
    noise_filter: NoiseFilter | None = None,
) -> tuple[SignatureGroup, ...]:
    """Group threads by signature, ordered by each group's lowest name."""
    members: dict[str, list[ThreadSnapshot]] = {}
    for snapshot in snapshots:
        if noise_filter is not None and noise_filter(snapshot):
            continue
        members.setdefault(render_thread(snapshot), []).append(snapshot)

    groups = []
    for signature, threads in members.items():
        representative = min(threads, key=lambda t: name_key(t.name))
        names = tuple(sorted((t.name for t in threads), key=name_key))
        groups.append(SignatureGroup(signature, names, representative))
    groups.sort(key=lambda g: name_key(g.representative.name))
    return tuple(groups)


def build_report(collection: ThreadCollection, noise_filter: NoiseFilter | None = None) -> Report:
    """Turn a collection into a report. Deadlocks skip grouping and filtering."""
    if collection.is_deadlock:
        return Report(
            deadlocked=tuple(collection.snapshots),
            deadlocked_ids=tuple(collection.deadlocked_ids),
        )
    return Report(groups=group_threads(collection.snapshots, noise_filter))


def format_spike_message(dead_ns: int, report: Report) -> str:
    """Full diagnostic text written to the log for one spike."""
    return (
        "The monitored loop appears to have lag spiked.\n"
        f"Last tick {dead_ns / 1_000_000_000:.3f}s ago.\n"
        f"{report.render()}"
    )
