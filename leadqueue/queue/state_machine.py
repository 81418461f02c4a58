"""Status transitions of queue items, including retry bookkeeping."""
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

from leadqueue.business_calendar import BusinessCalendar
from leadqueue.capacity import CapacityLedger
from leadqueue.errors import CapacityExhausted, InvalidTransition
from leadqueue.logging_conf import logger
from leadqueue.policy import QueueConfig
from leadqueue.queue.models import (
    CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING, QUEUED, QueueItem,
)
from leadqueue.queue.store import QueueStore, call_with_retry

TRANSITIONS = {
    PENDING: {QUEUED, CANCELLED},
    QUEUED: {PROCESSING, CANCELLED},
    PROCESSING: {COMPLETED, FAILED},
    FAILED: {QUEUED},
    COMPLETED: set(),
    CANCELLED: set(),
}


class QueueStateMachine:
    """The only writer of item status, attempts and lifecycle timestamps.

    Every transition is a compare-and-set on the stored status: it only lands
    if the item still has the status the caller saw. A caller that lost the
    race gets ``InvalidTransition`` and the stored item is left as it was.
    """

    def __init__(self, store: QueueStore, ledger: CapacityLedger,
                 calendar: BusinessCalendar, config: QueueConfig):
        self.store = store
        self.ledger = ledger
        self.calendar = calendar
        self.config = config

    def check(self, item: QueueItem, target: str) -> None:
        if target not in TRANSITIONS.get(item.status, set()):
            raise InvalidTransition(item.id, item.status, target)
        if item.status == FAILED and not item.can_retry:
            raise InvalidTransition(item.id, item.status, target, "retries exhausted")

    def enqueue(self, item: QueueItem, scheduled_for: datetime, now: datetime) -> QueueItem:
        """pending -> queued. Capacity for ``scheduled_for`` is already reserved."""
        if scheduled_for < now:
            raise InvalidTransition(item.id, item.status, QUEUED, "scheduled_for is in the past")
        return self._apply(item, QUEUED, now, scheduled_for=scheduled_for,
                           queued_at=item.queued_at or now)

    def claim(self, item: QueueItem, now: datetime) -> Optional[QueueItem]:
        """queued -> processing, or None when another dispatcher got there first."""
        try:
            return self._apply(item, PROCESSING, now, processed_at=item.processed_at or now)
        except InvalidTransition as e:
            logger.debug(f"Claim skipped: {e}")
            return None

    def complete(self, item: QueueItem, now: datetime,
                 provider_message_id: Optional[str] = None) -> QueueItem:
        done = self._apply(item, COMPLETED, now, completed_at=now, last_error=None,
                           provider_message_id=provider_message_id)
        logger.info(f"Completed {done.id} (lead {done.subject_id})")
        return done

    def fail(self, item: QueueItem, now: datetime, error: str) -> QueueItem:
        """processing -> failed, then back to queued while attempts remain.

        Returns the item as it ended up: ``queued`` when a retry was
        scheduled, ``failed`` otherwise.
        """
        attempts = min(item.attempts + 1, item.max_attempts)
        failed = self._apply(item, FAILED, now, attempts=attempts, last_error=(error or "")[:500])

        if not failed.can_retry:
            logger.error(
                f"Item {failed.id} (lead {failed.subject_id}) failed permanently "
                f"after {failed.attempts} attempts: {failed.last_error}"
            )
            if failed.scheduled_for is not None:
                self.ledger.release(self._day(failed.scheduled_for), 1)
            return failed

        try:
            return self.retry(failed, now)
        except CapacityExhausted as e:
            logger.warning(f"Item {failed.id} left failed, no capacity for a retry: {e}")
            return failed

    def retry(self, item: QueueItem, now: datetime) -> QueueItem:
        """failed -> queued with linear backoff, re-reserving capacity."""
        self.check(item, QUEUED)
        horizon = timedelta(days=self.config.horizon_days)
        delay = min(self.config.retry_base_delay * item.attempts, horizon)
        not_before = now + delay
        if item.scheduled_for is not None and not_before <= item.scheduled_for:
            not_before = item.scheduled_for + timedelta(seconds=1)

        day, slot = self.place(self.calendar.next_working_instant(not_before))
        try:
            queued = self._apply(item, QUEUED, now, scheduled_for=slot)
        except Exception:
            self.ledger.release(day, 1)
            raise
        if item.scheduled_for is not None:
            self.ledger.release(self._day(item.scheduled_for), 1)
        logger.info(
            f"Retry {queued.attempts}/{queued.max_attempts} for {queued.id} "
            f"scheduled for {slot.isoformat()}"
        )
        return queued

    def retire(self, item: QueueItem, now: datetime, reason: str) -> QueueItem:
        """Use up the remaining attempts of a failed item and free its day."""
        if item.status != FAILED or not item.can_retry:
            raise InvalidTransition(item.id, item.status, FAILED, "only retryable failed items retire")
        retired = self._save(item, FAILED, item.evolve(
            attempts=item.max_attempts, last_error=reason[:500], updated_at=now,
        ))
        if item.scheduled_for is not None:
            self.ledger.release(self._day(item.scheduled_for), 1)
        logger.info(f"Retired {retired.id} (lead {retired.subject_id}): {reason}")
        return retired

    def cancel(self, item: QueueItem, now: datetime) -> QueueItem:
        """pending|queued -> cancelled. Loses against a dispatcher that claimed first."""
        cancelled = self._apply(item, CANCELLED, now)
        if item.status == QUEUED and item.scheduled_for is not None:
            self.ledger.release(self._day(item.scheduled_for), 1)
        logger.info(f"Cancelled {cancelled.id} (lead {cancelled.subject_id})")
        return cancelled

    def reschedule(self, item: QueueItem, scheduled_for: datetime, now: datetime) -> QueueItem:
        """Move a pending or queued item to another working instant."""
        if item.status not in (PENDING, QUEUED):
            raise InvalidTransition(item.id, item.status, item.status, "only pending or queued items move")
        target = self.calendar.next_working_instant(max(scheduled_for, now))
        if item.status == PENDING:
            return self._save(item, item.status, item.evolve(scheduled_for=target, updated_at=now))

        new_day = self._day(target)
        if not self.ledger.reserve(new_day, 1):
            raise CapacityExhausted(f"No capacity left on {new_day}")
        try:
            moved = self._save(item, item.status, item.evolve(scheduled_for=target, updated_at=now))
        except Exception:
            self.ledger.release(new_day, 1)
            raise
        if item.scheduled_for is not None:
            self.ledger.release(self._day(item.scheduled_for), 1)
        return moved

    def place(self, earliest: datetime) -> Tuple[date, datetime]:
        """Reserve one unit on the first day from ``earliest`` with room left."""
        first = self._day(earliest)
        for day in self.calendar.first_working_days(first, self.config.horizon_days):
            if self.ledger.reserve(day, 1):
                slot = earliest if day == first else self.calendar.opening(day)
                return day, slot
        raise CapacityExhausted(
            f"No capacity within {self.config.horizon_days} working days of {first}"
        )

    def _apply(self, item: QueueItem, target: str, now: datetime, **changes) -> QueueItem:
        self.check(item, target)
        return self._save(item, target, item.evolve(status=target, updated_at=now, **changes))

    def _save(self, item: QueueItem, target: str, updated: QueueItem) -> QueueItem:
        saved = call_with_retry(
            lambda: self.store.save_item(updated, expected_status=item.status),
            f"Saving item {item.id} ({item.status} -> {target})",
        )
        if not saved:
            current = self.store.get_item(item.id)
            raise InvalidTransition(
                item.id, current.status if current else "missing", target, "changed concurrently"
            )
        return updated

    def _day(self, instant: datetime) -> date:
        return self.calendar.localize(instant).date()
