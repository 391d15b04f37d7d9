"""Detector configuration and environment overrides."""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ENV_PREFIX = "SPIKEWATCH_"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_number(name: str, default: float, cast=float):
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring malformed %s%s=%r", ENV_PREFIX, name, raw)
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(ENV_PREFIX + name)
    return raw if raw else default


@dataclass(slots=True, frozen=True)
class DetectorConfig:
    """
    Tunables for lag spike detection.

    Attributes:
        threshold_ms: Time since the last tick after which the loop counts as stalled.
        cooldown_seconds: Pause after each report before polling resumes.
        all_threads: Capture every thread with lock detail instead of only the main loop.
        main_thread_prefix: Case-insensitive name prefix of the monitored loop's thread.
        idle_frame_patterns: Frame substrings that mark an idle pool worker.
        run_frame_marker: Frame substring that marks a thread's run method.
        max_run_frames: Idle workers have at most this many run frames.
        idle_innermost_patterns: Innermost-frame substrings that mark an idle pool worker.
        default_duration_seconds: Session length when the requester gives none.
    """

    threshold_ms: int = 200
    cooldown_seconds: float = 15.0
    all_threads: bool = False
    main_thread_prefix: str = "MainThread"
    idle_frame_patterns: tuple[str, ...] = ("queue.Queue.get(",)
    run_frame_marker: str = ".run("
    max_run_frames: int = 2
    idle_innermost_patterns: tuple[str, ...] = ("concurrent.futures.thread._worker(",)
    default_duration_seconds: int = 60

    def __post_init__(self) -> None:
        if self.threshold_ms <= 0:
            raise ValueError(f"threshold_ms must be > 0, got {self.threshold_ms}")
        if self.cooldown_seconds < 0:
            raise ValueError(f"cooldown_seconds must be >= 0, got {self.cooldown_seconds}")
        if self.default_duration_seconds <= 0:
            raise ValueError(
                f"default_duration_seconds must be > 0, got {self.default_duration_seconds}"
            )

    @property
    def threshold_ns(self) -> int:
        return self.threshold_ms * 1_000_000

    @property
    def poll_interval_ms(self) -> int:
        """Sleep between polls: a sixth of the threshold, between 1ms and 1s."""
        return min(1000, max(1, self.threshold_ms // 6))

    @classmethod
    def from_env(cls) -> "DetectorConfig":
        """Build a config from ``SPIKEWATCH_*`` environment variables."""
        defaults = cls()
        return cls(
            threshold_ms=_env_number("THRESHOLD_MS", defaults.threshold_ms, int),
            cooldown_seconds=_env_number("COOLDOWN_S", defaults.cooldown_seconds),
            all_threads=_env_bool("ALL_THREADS", defaults.all_threads),
            main_thread_prefix=_env_str("MAIN_THREAD_PREFIX", defaults.main_thread_prefix),
            default_duration_seconds=_env_number(
                "DURATION_S", defaults.default_duration_seconds, int
            ),
        )
