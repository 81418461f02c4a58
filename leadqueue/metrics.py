"""Queue metrics and health classification."""
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, Iterable, Optional

from leadqueue.business_calendar import BusinessCalendar
from leadqueue.capacity import CapacityLedger
from leadqueue.dispatcher import utcnow
from leadqueue.errors import PersistenceFailure
from leadqueue.logging_conf import logger
from leadqueue.policy import QueueConfig
from leadqueue.queue.models import (
    COMPLETED, PENDING, PROCESSING, QUEUED, STATUSES, ItemFilter, QueueItem,
)
from leadqueue.queue.store import QueueStore

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

CRITICAL_SUCCESS_RATE = 0.5
DEGRADED_SUCCESS_RATE = 0.85
DEGRADED_DEPTH_FACTOR = 2


@dataclass
class QueueMetricsSnapshot:
    queue_depth: int = 0
    actively_processing: int = 0
    processed_today: int = 0
    success_rate: float = 1.0
    queue_health: str = HEALTHY
    counts: Dict[str, int] = field(default_factory=dict)
    hard_failures: int = 0
    daily_limit: int = 0
    committed_today: int = 0
    remaining_capacity_today: int = 0
    is_business_day: bool = False
    next_processing_time: Optional[datetime] = None
    last_processed_at: Optional[datetime] = None
    generated_at: Optional[datetime] = None
    data_source_available: bool = True
    error: Optional[str] = None

    def to_dict(self):
        data = asdict(self)
        for key in ("next_processing_time", "last_processed_at", "generated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def classify_health(queue_depth: int, success_rate: float, daily_limit: int,
                    data_source_available: bool = True) -> str:
    if not data_source_available or success_rate < CRITICAL_SUCCESS_RATE:
        return CRITICAL
    if queue_depth > DEGRADED_DEPTH_FACTOR * daily_limit or success_rate < DEGRADED_SUCCESS_RATE:
        return DEGRADED
    return HEALTHY


def compute_metrics(items: Iterable[QueueItem], now: datetime, calendar: BusinessCalendar,
                    config: QueueConfig) -> QueueMetricsSnapshot:
    """Aggregate a materialized item set into a snapshot (capacity fields left at 0)."""
    now = calendar.localize(now)
    today = now.date()
    window_start = now - config.success_window
    counts = {status: 0 for status in STATUSES}
    processed_today = 0
    completed_in_window = 0
    failed_in_window = 0
    hard_failures = 0
    last_processed_at = None

    for item in items:
        counts[item.status] = counts.get(item.status, 0) + 1
        if item.status == COMPLETED and item.completed_at is not None:
            completed_at = calendar.localize(item.completed_at)
            if completed_at.date() == today:
                processed_today += 1
            if completed_at >= window_start:
                completed_in_window += 1
            if last_processed_at is None or completed_at > last_processed_at:
                last_processed_at = completed_at
        elif item.is_hard_failure:
            hard_failures += 1
            failed_at = item.updated_at or item.processed_at
            if failed_at is None or calendar.localize(failed_at) >= window_start:
                failed_in_window += 1

    finished = completed_in_window + failed_in_window
    success_rate = completed_in_window / finished if finished else 1.0
    queue_depth = counts[PENDING] + counts[QUEUED]
    if not calendar.is_working_day(today):
        processed_today = 0

    return QueueMetricsSnapshot(
        queue_depth=queue_depth,
        actively_processing=counts[PROCESSING],
        processed_today=processed_today,
        success_rate=round(success_rate, 4),
        queue_health=classify_health(queue_depth, success_rate, config.daily_limit),
        counts=counts,
        hard_failures=hard_failures,
        daily_limit=config.daily_limit,
        is_business_day=calendar.is_working_day(today),
        next_processing_time=calendar.next_working_instant(now),
        last_processed_at=last_processed_at,
        generated_at=now,
    )


class MetricsMonitor:
    """Reads the item set and reports queue health, with a short-lived cache.

    The cache is instance state: whoever holds the monitor calls
    ``invalidate()`` after changing the queue.
    """

    def __init__(self, store: QueueStore, ledger: CapacityLedger, calendar: BusinessCalendar,
                 config: QueueConfig, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ledger = ledger
        self.calendar = calendar
        self.config = config
        self.clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[QueueMetricsSnapshot] = None
        self._cached_at = 0.0

    def invalidate(self):
        with self._lock:
            self._cached = None

    def get_metrics(self, now: Optional[datetime] = None) -> QueueMetricsSnapshot:
        """Current snapshot. Never raises: an unreachable store reads as critical."""
        ttl = self.config.metrics_cache_ttl.total_seconds()
        with self._lock:
            if now is None and self._cached is not None and time.monotonic() - self._cached_at < ttl:
                return self._cached

        now = self.calendar.localize(now or self.clock())
        try:
            items = self.store.load_eligible_items(ItemFilter())
            snapshot = compute_metrics(items, now, self.calendar, self.config)
            self._add_capacity(snapshot, now.date())
        except PersistenceFailure as e:
            logger.error(f"Metrics unavailable, data source unreachable: {e}")
            return self._unavailable(now, str(e))

        with self._lock:
            self._cached = snapshot
            self._cached_at = time.monotonic()
        return snapshot

    def _add_capacity(self, snapshot: QueueMetricsSnapshot, today: date) -> None:
        window = self.ledger.window(today)
        # Reported as stored, so over-commit from outside writers stays visible
        snapshot.committed_today = window.committed
        snapshot.remaining_capacity_today = max(0, self.config.daily_limit - window.committed)

    def _unavailable(self, now: datetime, error: str) -> QueueMetricsSnapshot:
        return QueueMetricsSnapshot(
            success_rate=0.0,
            queue_health=CRITICAL,
            counts={status: 0 for status in STATUSES},
            daily_limit=self.config.daily_limit,
            is_business_day=self.calendar.is_working_day(now.date()),
            next_processing_time=self.calendar.next_working_instant(now),
            generated_at=now,
            data_source_available=False,
            error=error,
        )
