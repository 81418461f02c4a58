"""Per-day capacity accounting."""
import threading
from datetime import date, timedelta
from typing import Dict, Iterable, Optional

from leadqueue.errors import PersistenceFailure
from leadqueue.logging_conf import logger
from leadqueue.queue.models import CapacityWindow
from leadqueue.queue.store import InMemoryStore, QueueStore, call_with_retry

# Lost compare-and-set rounds tolerated before a reservation gives up.
MAX_CAS_ROUNDS = 50


def week_bounds(day: date):
    """Monday and Sunday of the ISO week containing ``day``."""
    monday = day - timedelta(days=day.isoweekday() - 1)
    return monday, monday + timedelta(days=6)


class CapacityLedger:
    """Tracks committed load per day against the daily and weekly limits.

    ``reserve`` is the only call that adds load. It is a conditional update
    guarded by the stored ``committed`` value, so two concurrent reservations
    for the same day can never push it past its limit; the loser simply gets
    a smaller grant.
    """

    def __init__(self, store: QueueStore, daily_limit: int, weekly_limit: Optional[int] = None):
        self.store = store
        self.daily_limit = daily_limit
        self.weekly_limit = weekly_limit
        # Weekly totals span several rows; serialize them inside this process.
        self._week_lock = threading.Lock()

    def window(self, day: date) -> CapacityWindow:
        """Stored window for ``day`` as is, over-commit included."""
        windows = call_with_retry(
            lambda: self.store.load_capacity(day, day), f"Loading capacity for {day}"
        )
        if windows:
            return windows[0]
        return CapacityWindow(day=day, limit=self.daily_limit, committed=0)

    def snapshot(self, days: Iterable[date]) -> Dict[date, CapacityWindow]:
        days = sorted(set(days))
        if not days:
            return {}
        stored = {
            w.day: w for w in call_with_retry(
                lambda: self.store.load_capacity(days[0], days[-1]), "Loading capacity snapshot"
            )
        }
        return {
            day: stored.get(day, CapacityWindow(day=day, limit=self.daily_limit))
            for day in days
        }

    def remaining_capacity(self, day: date) -> int:
        window = self.window(day)
        remaining = max(0, self.daily_limit - window.committed)
        if self.weekly_limit is not None:
            remaining = min(remaining, max(0, self.weekly_limit - self._week_committed(day)))
        return remaining

    def reserve(self, day: date, count: int) -> int:
        """Commit up to ``count`` units to ``day``; returns how many were granted."""
        if count <= 0:
            return 0
        if self.weekly_limit is None:
            return self._reserve(day, count)
        with self._week_lock:
            weekly_left = max(0, self.weekly_limit - self._week_committed(day))
            return self._reserve(day, min(count, weekly_left))

    def release(self, day: date, count: int = 1) -> None:
        """Give back ``count`` units of ``day`` (cancelled or moved items)."""
        if count <= 0:
            return
        for _ in range(MAX_CAS_ROUNDS):
            window = self.window(day)
            released = CapacityWindow(
                day=day, limit=window.limit, committed=max(0, window.committed - count)
            )
            if self._save(released, window.committed):
                logger.debug(f"Released {count} unit(s) on {day}: {window.committed} -> {released.committed}")
                return
        raise PersistenceFailure(f"Could not release capacity on {day}: too much contention")

    def detached(self, days: Iterable[date]) -> "CapacityLedger":
        """A ledger over an in-memory copy of ``days``, for dry runs."""
        days = list(days)
        if self.weekly_limit is not None and days:
            first, _ = week_bounds(min(days))
            _, last = week_bounds(max(days))
            days = [first + timedelta(days=i) for i in range((last - first).days + 1)]
        copy_store = InMemoryStore(windows=self.snapshot(days).values())
        return CapacityLedger(copy_store, self.daily_limit, self.weekly_limit)

    def _reserve(self, day: date, count: int) -> int:
        if count <= 0:
            return 0
        for _ in range(MAX_CAS_ROUNDS):
            window = self.window(day)
            limit = self.daily_limit
            granted = min(count, max(0, limit - window.committed))
            if granted == 0:
                return 0
            updated = CapacityWindow(day=day, limit=limit, committed=window.committed + granted)
            if self._save(updated, window.committed):
                logger.debug(f"Reserved {granted}/{count} on {day} ({updated.committed}/{limit})")
                return granted
            logger.debug(f"Capacity for {day} changed underneath us, retrying reservation")
        logger.warning(f"Gave up reserving capacity on {day} after {MAX_CAS_ROUNDS} contended rounds")
        return 0

    def _save(self, window: CapacityWindow, expected_committed: int) -> bool:
        # Not retried: a write whose outcome is unknown may already have landed.
        return self.store.save_capacity(window, expected_committed=expected_committed)

    def _week_committed(self, day: date) -> int:
        monday, sunday = week_bounds(day)
        windows = call_with_retry(
            lambda: self.store.load_capacity(monday, sunday), f"Loading week of {monday}"
        )
        return sum(w.committed for w in windows)
