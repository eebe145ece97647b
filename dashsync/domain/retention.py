from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..core.errors import ConfigurationError


@dataclass(frozen=True)
class RetentionPolicy:
    """Bounds the reading store by count (keep last N) or by age (keep last D).

    Exactly one bound is set per instance.
    """

    max_count: Optional[int] = None
    max_age: Optional[timedelta] = None

    def __post_init__(self) -> None:
        if (self.max_count is None) == (self.max_age is None):
            raise ConfigurationError("Retention policy needs exactly one of max_count or max_age")
        if self.max_count is not None and self.max_count < 1:
            raise ConfigurationError(f"Retention count must be positive, got {self.max_count}")
        if self.max_age is not None and self.max_age <= timedelta(0):
            raise ConfigurationError(f"Retention window must be positive, got {self.max_age}")

    @classmethod
    def count(cls, n: int) -> "RetentionPolicy":
        return cls(max_count=n)

    @classmethod
    def window(cls, age: timedelta) -> "RetentionPolicy":
        return cls(max_age=age)

    @property
    def is_count(self) -> bool:
        return self.max_count is not None

    def cutoff(self, now: datetime) -> Optional[datetime]:
        """Oldest timestamp still retained at ``now`` (time policy only)."""
        if self.max_age is None:
            return None
        return now - self.max_age

    def fetch_bounds(self, now: datetime) -> tuple[Optional[datetime], Optional[int]]:
        """(since, limit) arguments for a full-window fetch."""
        return self.cutoff(now), self.max_count

    def describe(self) -> str:
        if self.max_count is not None:
            return f"count({self.max_count})"
        return f"window({int(self.max_age.total_seconds())}s)"


def build_retention(mode: str, count: int, window_seconds: float) -> RetentionPolicy:
    mode = mode.lower()
    if mode == "count":
        return RetentionPolicy.count(count)
    if mode == "window":
        return RetentionPolicy.window(timedelta(seconds=window_seconds))
    raise ConfigurationError(f"Unknown retention mode: {mode!r} (expected 'count' or 'window')")
