"""Dispatcher that sends due queue items to the messaging channel."""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from leadqueue.business_calendar import BusinessCalendar
from leadqueue.errors import InvalidTransition, PersistenceFailure, RateLimited, SendFailure
from leadqueue.logging_conf import logger
from leadqueue.policy import QueueConfig
from leadqueue.queue.models import QUEUED, ItemFilter, QueueItem
from leadqueue.queue.state_machine import QueueStateMachine
from leadqueue.queue.store import QueueStore, call_with_retry


@dataclass
class TickReport:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited: bool = False

    @property
    def processed(self) -> int:
        return self.completed + self.failed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dispatcher:
    """Processes due items from the queue, one bounded batch per tick."""

    def __init__(self, store: QueueStore, state_machine: QueueStateMachine, sender,
                 calendar: BusinessCalendar, config: QueueConfig, poll_interval: int = 5,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.state_machine = state_machine
        self.sender = sender
        self.calendar = calendar
        self.config = config
        self.poll_interval = poll_interval
        self.clock = clock
        self.paused_until: Optional[datetime] = None
        self.running = False
        self.thread = None
        self._executor = ThreadPoolExecutor(max_workers=config.batch_size, thread_name_prefix="send")

    def start(self):
        """Start the dispatcher in a background thread."""
        if self.running:
            logger.warning("Dispatcher is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="dispatcher", daemon=True)
        self.thread.start()
        logger.info(f"Dispatcher started (interval: {self.poll_interval}s, batch: {self.config.batch_size})")

    def stop(self):
        """Stop the dispatcher. Sends already in flight finish on their own."""
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=self.config.send_timeout.total_seconds() + 10)
        logger.info("Dispatcher stopped")

    def shutdown(self):
        self.stop()
        self._executor.shutdown(wait=False)

    def _run(self):
        """Main dispatcher loop."""
        logger.info("Dispatcher thread started")

        while self.running:
            try:
                report = self.tick()
                if report.processed:
                    continue
            except Exception as e:
                logger.error(f"Dispatcher error: {e}", exc_info=True)

            for _ in range(self.poll_interval):
                if not self.running:
                    break
                time.sleep(1)

        logger.info("Dispatcher thread stopped")

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Send every due item of one batch, in priority then arrival order."""
        if now is None:
            stamp = self._now
        else:
            fixed = self.calendar.localize(now)
            stamp = lambda: fixed
        now = stamp()
        report = TickReport()

        if self.paused_until is not None:
            if now < self.paused_until:
                logger.debug(f"Dispatch paused by rate limit until {self.paused_until.isoformat()}")
                return report
            self.paused_until = None
        if self.config.respect_business_hours and not self.calendar.is_within_business_hours(now):
            return report

        due = call_with_retry(
            lambda: self.store.load_eligible_items(
                ItemFilter(statuses=(QUEUED,), due_before=now, limit=self.config.batch_size)
            ),
            "Loading due items",
        )
        if not due:
            return report
        logger.info(f"Dispatching {len(due)} due item(s)")

        for item in due:
            if not self._dispatch(item, now, stamp, report):
                break
        return report

    def _dispatch(self, item: QueueItem, now: datetime, stamp: Callable[[], datetime],
                  report: TickReport) -> bool:
        """Send one item. Returns False when the rest of the batch must wait."""
        claimed = self.state_machine.claim(item, now)
        if claimed is None:
            report.skipped += 1
            return True
        report.claimed += 1

        future = self._executor.submit(
            self.sender.send, claimed.subject_id, self._payload(claimed), claimed.id
        )
        try:
            result = future.result(timeout=self.config.send_timeout.total_seconds())
        except FutureTimeout:
            timeout = self.config.send_timeout.total_seconds()
            self._fail(claimed, f"send timed out after {timeout:.0f}s", stamp(), report)
            return True
        except RateLimited as e:
            limited_at = stamp()
            self.paused_until = limited_at + timedelta(seconds=e.retry_after)
            report.rate_limited = True
            self._fail(claimed, str(e), limited_at, report)
            logger.warning(f"Pausing dispatch until {self.paused_until.isoformat()}")
            return False
        except SendFailure as e:
            self._fail(claimed, str(e), stamp(), report)
            return True
        except Exception as e:
            logger.error(f"Unexpected send error for {claimed.id}: {e}", exc_info=True)
            self._fail(claimed, f"unexpected error: {e}", stamp(), report)
            return True

        try:
            self.state_machine.complete(claimed, stamp(), result.provider_message_id)
            report.completed += 1
        except (PersistenceFailure, InvalidTransition) as e:
            # Left in processing; the reconciliation sweep picks it up.
            logger.error(f"Sent {claimed.id} but could not record completion: {e}")
        return True

    def _fail(self, item: QueueItem, error: str, now: datetime, report: TickReport) -> None:
        logger.warning(f"Send failed for {item.id} (lead {item.subject_id}): {error}")
        try:
            self.state_machine.fail(item, now, error)
            report.failed += 1
        except (PersistenceFailure, InvalidTransition) as e:
            logger.error(f"Could not record failure of {item.id}: {e}")

    def _now(self) -> datetime:
        return self.calendar.localize(self.clock())

    @staticmethod
    def _payload(item: QueueItem):
        return {
            "queue_item_id": item.id,
            "priority": item.priority.name.lower(),
            "attempt": item.attempts + 1,
            "max_attempts": item.max_attempts,
            "scheduled_for": item.scheduled_for.isoformat() if item.scheduled_for else None,
            "metadata": item.metadata,
        }
