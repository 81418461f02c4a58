"""Spreads pending items over working days within the capacity limits."""
from datetime import datetime
from itertools import islice
from typing import List, Optional, Sequence

from leadqueue.business_calendar import BusinessCalendar
from leadqueue.capacity import CapacityLedger
from leadqueue.errors import ConfigurationError, InvalidTransition, PersistenceFailure
from leadqueue.logging_conf import logger
from leadqueue.policy import DISTRIBUTE_NEXT_DAY, QueueConfig
from leadqueue.queue.models import (
    CAPACITY_EXHAUSTED, INVALID_TRANSITION, PENDING, PERSISTENCE_FAILED,
    Assignment, DistributionResult, QueueItem, Rejection,
)
from leadqueue.queue.state_machine import QueueStateMachine


class DistributionEngine:
    """Assigns a scheduled instant to every pending item, or rejects it.

    Items are ordered by priority, highest first, keeping arrival order among
    equals. Working days are taken one at a time starting at the next working
    instant; each day gets as many items as the ledger grants and the rest
    roll over to the following working day (``distribute_next_day``). Priority
    never lets an item skip the calendar or the limits. After
    ``horizon_days`` working days the leftovers are rejected with
    ``capacity_exhausted``.
    """

    def __init__(self, calendar: BusinessCalendar, config: QueueConfig,
                 state_machine: Optional[QueueStateMachine] = None):
        if config.overflow_strategy != DISTRIBUTE_NEXT_DAY:
            raise ConfigurationError(f"Unsupported overflow strategy: {config.overflow_strategy}")
        self.calendar = calendar
        self.config = config
        self.state_machine = state_machine

    def order(self, items: Sequence[QueueItem]) -> List[QueueItem]:
        # sorted() is stable, so equal priorities keep their arrival order
        return sorted(items, key=lambda item: -int(item.priority))

    def distribute(self, items: Sequence[QueueItem], ledger: CapacityLedger,
                   now: datetime, commit: bool = True) -> DistributionResult:
        """Schedule ``items`` (pending, in arrival order) against ``ledger``.

        With ``commit`` each placement is persisted as ``pending -> queued``
        through the state machine; a placement that cannot be persisted has
        its capacity unit released again. Without ``commit`` nothing but the
        ledger is touched, which is how dry runs work on a detached ledger.
        """
        result = DistributionResult()
        remaining = []
        for item in self.order(items):
            if item.status != PENDING:
                result.rejected.append(Rejection(item.subject_id, INVALID_TRANSITION, item.id,
                                                 f"status is {item.status}"))
            else:
                remaining.append(item)
        if not remaining:
            return result
        if commit and self.state_machine is None:
            raise ValueError("commit=True needs a state machine")

        now = self.calendar.localize(now)
        start = self.calendar.next_working_instant(now)
        days = islice(self.calendar.iter_working_days(start.date()), self.config.horizon_days)
        for day in days:
            if not remaining:
                break
            try:
                granted = ledger.reserve(day, len(remaining))
            except PersistenceFailure as e:
                logger.error(f"Capacity reservation for {day} failed: {e}")
                for item in remaining:
                    result.rejected.append(Rejection(item.subject_id, PERSISTENCE_FAILED, item.id, str(e)))
                return result
            if not granted:
                continue
            batch, remaining = remaining[:granted], remaining[granted:]
            slot = start if day == start.date() else self.calendar.opening(day)
            logger.info(f"Distributing {granted} item(s) to {day} ({len(remaining)} left)")
            for item in batch:
                if not commit:
                    result.scheduled.append(Assignment(item, slot))
                    continue
                placed = self._commit(item, slot, ledger, now, result)
                if placed is not None:
                    result.scheduled.append(Assignment(placed, slot))

        for item in remaining:
            result.rejected.append(Rejection(item.subject_id, CAPACITY_EXHAUSTED, item.id,
                                             f"no capacity within {self.config.horizon_days} working days"))
        if remaining:
            logger.warning(f"{len(remaining)} item(s) could not be scheduled: capacity exhausted")
        return result

    def _commit(self, item: QueueItem, slot: datetime, ledger: CapacityLedger,
                now: datetime, result: DistributionResult) -> Optional[QueueItem]:
        try:
            return self.state_machine.enqueue(item, slot, now)
        except (PersistenceFailure, InvalidTransition) as e:
            reason = PERSISTENCE_FAILED if isinstance(e, PersistenceFailure) else INVALID_TRANSITION
            logger.error(f"Could not queue {item.id} for {slot.isoformat()}: {e}")
            try:
                ledger.release(slot.date(), 1)
            except PersistenceFailure as release_error:
                logger.error(f"Capacity unit on {slot.date()} leaked for {item.id}: {release_error}")
            result.rejected.append(Rejection(item.subject_id, reason, item.id, str(e)))
            return None
