"""
Expired-item sweeper.

Purges dead rows on a background APScheduler job at most once per interval.
The decision is taken by whichever cache call notices the interval elapsed;
the purge itself never blocks or fails that call.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler

from .clock import Clock, SystemClock
from .exceptions import InvalidExpirationError

logger = logging.getLogger(__name__)

MINIMUM_DELETION_INTERVAL = timedelta(minutes=5)
DEFAULT_DELETION_INTERVAL = timedelta(minutes=30)

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class ExpiredItemsSweeper:
    """
    Triggers ``purge(now)`` when at least ``interval`` has passed since the last trigger.

    Each sweeper owns its state, lock and scheduler, so two caches in one
    process never share a schedule.

    Example:
        sweeper = ExpiredItemsSweeper(store.delete_expired_items, clock)
        sweeper.maybe_scan()   # first call always dispatches
        sweeper.maybe_scan()   # no-op until the interval elapses
    """

    def __init__(
        self,
        purge: Callable[[datetime], Any],
        clock: Clock | None = None,
        interval: timedelta | None = None,
        scheduler: BackgroundScheduler | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        """
        Args:
            purge: Deletes rows expired before the given instant
            clock: Time source; defaults to the UTC wall clock
            interval: Minimum time between purges (default 30 minutes, floor 5)
            scheduler: Scheduler to run purges on; one is created when omitted
            on_error: Optional callback receiving purge failures
        """
        if interval is None:
            interval = DEFAULT_DELETION_INTERVAL
        if interval < MINIMUM_DELETION_INTERVAL:
            raise InvalidExpirationError(
                "The expired items deletion interval cannot be less than the minimum "
                f"value of {MINIMUM_DELETION_INTERVAL.total_seconds() / 60:g} minutes."
            )

        self.purge = purge
        self.clock = clock if clock is not None else SystemClock()
        self.interval = interval
        self.on_error = on_error
        self.last_scan = _NEVER
        self._closed = False

        self._lock = threading.Lock()
        self._scheduler = scheduler if scheduler is not None else BackgroundScheduler(daemon=True)
        self._scheduler_lock = threading.RLock()

    def maybe_scan(self, now: datetime | None = None) -> bool:
        """Dispatch a purge if one is due. Returns True when one was dispatched."""
        with self._lock:
            if self._closed:
                return False
            if now is None:
                now = self.clock.now()
            if now - self.last_scan <= self.interval:
                return False
            self.last_scan = now

        try:
            self._dispatch(now)
        except Exception as e:
            logger.error(f"Could not schedule expired items purge: {e}", exc_info=True)
            return False
        return True

    def _dispatch(self, now: datetime) -> None:
        with self._scheduler_lock:
            if not self._scheduler.running:
                self._scheduler.start()
                logger.info("Expired items sweeper scheduler started")
            # No trigger: APScheduler runs the job once, as soon as a worker is free.
            self._scheduler.add_job(
                self._purge_job, args=[now], misfire_grace_time=None
            )

    def _purge_job(self, now: datetime) -> None:
        """Job body. Failures stay here: they are logged and handed to ``on_error``."""
        try:
            logger.debug(f"Purging cache items expired before {now.isoformat()}")
            start = time.time()
            self.purge(now)
            logger.debug(f"Expired items purge finished in {time.time() - start:.3f}s")
        except Exception as e:
            logger.error(f"Failed to purge expired cache items: {e}", exc_info=True)
            if self.on_error:
                try:
                    self.on_error(e)
                except Exception as err:
                    logger.error(f"Error handler failed: {err}")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler. Safe to call more than once."""
        with self._lock:
            self._closed = True
        with self._scheduler_lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
                logger.info("Expired items sweeper scheduler stopped")
