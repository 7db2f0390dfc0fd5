"""
Time sources.

Every component that needs "now" receives a Clock instead of reading the
wall clock, so tests can drive expiration deterministically.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything with a ``now()`` returning a timezone-aware UTC datetime."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    Clock that only moves when told to.

    Example:
        clock = ManualClock()
        cache = SQLCache(SQLCacheOptions(..., clock=clock))
        cache.set("k", b"v", CacheEntryOptions(sliding_expiration=timedelta(seconds=10)))
        clock.advance(seconds=11)
        assert cache.get("k") is None
    """

    def __init__(self, start: datetime | None = None):
        if start is None:
            start = datetime(2013, 1, 1, 1, 0, 0, tzinfo=timezone.utc)
        self._now = as_utc(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move forward by ``delta`` or by timedelta keyword args. Returns the new time."""
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now


def as_utc(value: datetime) -> datetime:
    """Normalise to an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
