"""Thread snapshot collection for lag spike reports."""

import logging
from dataclasses import dataclass

from spikewatch.introspection import RuntimeIntrospector, ThreadIntrospector
from spikewatch.models import ThreadSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ThreadCollection:
    """Result of one collection: either a deadlock set or a filtered dump."""

    snapshots: tuple[ThreadSnapshot, ...]
    deadlocked_ids: tuple[int, ...] = ()

    @property
    def is_deadlock(self) -> bool:
        return bool(self.deadlocked_ids)


class ThreadSnapshotCollector:
    """
    Captures thread state through a ``ThreadIntrospector``.

    A deadlock cycle takes priority: when one exists only the deadlocked
    threads are returned, with full lock detail. Otherwise every thread is
    captured and, unless ``include_all`` is set, reduced to the threads whose
    name starts with ``main_thread_prefix`` (case-insensitive).
    """

    def __init__(
        self,
        introspector: ThreadIntrospector | None = None,
        main_thread_prefix: str = "MainThread",
    ) -> None:
        self._introspector = introspector or RuntimeIntrospector()
        self._prefix = main_thread_prefix.lower()

    def collect(self, include_all: bool = False) -> ThreadCollection:
        deadlocked = tuple(self._introspector.find_deadlocked_threads() or ())
        if deadlocked:
            logger.debug("Deadlock cycle between threads %s", deadlocked)
            infos = self._introspector.thread_info(deadlocked, True, True)
            return ThreadCollection(snapshots=tuple(infos), deadlocked_ids=deadlocked)

        infos = self._introspector.dump_all_threads(include_all, include_all)
        if not include_all:
            infos = [info for info in infos if self.is_selected(info)]
        return ThreadCollection(snapshots=tuple(infos))

    def is_selected(self, snapshot: ThreadSnapshot) -> bool:
        """Whether a thread belongs in a default (not all-threads) report."""
        return snapshot.name.lower().startswith(self._prefix)
