"""Crash-loop protection for respawned workers."""

from __future__ import annotations

from dataclasses import dataclass

from shepherd._internal.errors import ConfigError


@dataclass(frozen=True)
class RespawnPolicy:
    """Decides when, and whether, a dead worker is started again.

    A worker that dies within ``min_uptime`` seconds of being spawned counts
    as a consecutive failure. Each failure doubles the respawn delay,
    starting at ``backoff_base`` and capped at ``backoff_max``. Once
    ``max_failures`` consecutive failures pile up the slot is parked until
    the next reload. A worker that survives ``min_uptime`` resets the count.

    Attributes:
        min_uptime: Seconds a worker must live to count as healthy.
        backoff_base: Delay after the first quick failure.
        backoff_max: Upper bound on the delay.
        max_failures: Consecutive quick failures before giving up; 0 never
            gives up.
    """

    min_uptime: float = 1.0
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    max_failures: int = 10

    def __post_init__(self) -> None:
        if self.min_uptime < 0:
            msg = f"min_uptime must be >= 0, got {self.min_uptime}"
            raise ConfigError(msg)
        if self.backoff_base < 0 or self.backoff_max < self.backoff_base:
            msg = (
                "backoff must satisfy 0 <= backoff_base <= backoff_max, "
                f"got {self.backoff_base}..{self.backoff_max}"
            )
            raise ConfigError(msg)
        if self.max_failures < 0:
            msg = f"max_failures must be >= 0, got {self.max_failures}"
            raise ConfigError(msg)

    def failures_after_exit(self, failures: int, uptime: float) -> int:
        """Return the consecutive-failure count after a worker exit."""
        if uptime >= self.min_uptime:
            return 0
        return failures + 1

    def delay(self, failures: int) -> float:
        """Seconds to wait before respawning after ``failures`` quick exits."""
        if failures <= 0:
            return 0.0
        return min(self.backoff_base * 2 ** min(failures - 1, 32), self.backoff_max)

    def exhausted(self, failures: int) -> bool:
        """True when the slot should be parked instead of respawned."""
        return self.max_failures > 0 and failures >= self.max_failures
