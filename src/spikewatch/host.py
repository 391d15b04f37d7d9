"""Contracts with the host process: where messages go and whether it is alive."""

import logging
import os
from collections.abc import Callable
from typing import Protocol

import psutil

from spikewatch.models import Requester

logger = logging.getLogger(__name__)


class OutputSink(Protocol):
    """Best-effort operator channel. Must not raise or block for long."""

    def send_text(self, requester: Requester | None, message: str) -> None: ...


class HostLiveness(Protocol):
    """Lifecycle queries answered fresh on every call."""

    def is_running(self) -> bool: ...

    def is_stopped(self) -> bool: ...


class LoggingOutputSink:
    """Output sink that writes operator messages to a logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def send_text(self, requester: Requester | None, message: str) -> None:
        who = requester.name if requester is not None else "-"
        self._log.info("[%s] %s", who, message)


class ProcessLiveness:
    """
    Liveness of an OS process via psutil.

    A process that has exited, been reaped or become a zombie counts as stopped.
    """

    def __init__(self, pid: int | None = None) -> None:
        self._pid = os.getpid() if pid is None else pid

    def _status(self) -> str | None:
        try:
            return psutil.Process(self._pid).status()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def is_running(self) -> bool:
        status = self._status()
        return status is not None and status not in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD)

    def is_stopped(self) -> bool:
        return not self.is_running()


class CallbackLiveness:
    """Liveness answered by host-supplied callables."""

    def __init__(
        self,
        is_running: Callable[[], bool],
        is_stopped: Callable[[], bool] | None = None,
    ) -> None:
        self._is_running = is_running
        self._is_stopped = is_stopped

    def is_running(self) -> bool:
        return self._is_running()

    def is_stopped(self) -> bool:
        if self._is_stopped is None:
            return False
        return self._is_stopped()
