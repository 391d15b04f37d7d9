"""Heartbeat register written by the monitored loop."""

import time


class HeartbeatRegister:
    """
    Single slot holding the monotonic timestamp of the most recent tick.

    Writes are plain attribute stores, which the interpreter makes atomically
    visible to other threads. Last writer wins.
    """

    def __init__(self) -> None:
        self._last_tick_ns = 0

    def record_tick(self, timestamp_ns: int | None = None) -> None:
        """Overwrite the stored heartbeat. Defaults to ``time.monotonic_ns()``."""
        self._last_tick_ns = time.monotonic_ns() if timestamp_ns is None else timestamp_ns

    def current(self) -> int | None:
        """Return the latest tick, or None if the loop has never ticked."""
        value = self._last_tick_ns
        return value if value else None
