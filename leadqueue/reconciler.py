"""Sweep for items stuck in processing."""
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional

from leadqueue.business_calendar import BusinessCalendar
from leadqueue.dispatcher import utcnow
from leadqueue.errors import InvalidTransition, PersistenceFailure
from leadqueue.logging_conf import logger
from leadqueue.policy import QueueConfig
from leadqueue.queue.models import PROCESSING, ItemFilter, QueueItem
from leadqueue.queue.state_machine import QueueStateMachine
from leadqueue.queue.store import QueueStore, call_with_retry

STALE_ERROR = "stale_processing"


class Reconciler:
    """Fails items whose send never reported back.

    An item that stays in ``processing`` longer than ``stale_after`` lost its
    dispatcher (crash, restart). Failing it hands it to the normal retry rule,
    so it is re-queued while attempts remain and dead-lettered otherwise.
    """

    def __init__(self, store: QueueStore, state_machine: QueueStateMachine,
                 calendar: BusinessCalendar, config: QueueConfig, interval: int = 300,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.state_machine = state_machine
        self.calendar = calendar
        self.config = config
        self.interval = interval
        self.clock = clock
        self.running = False
        self.thread = None

    def start(self):
        """Start the sweep in a background thread."""
        if self.running:
            logger.warning("Reconciler is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="reconciler", daemon=True)
        self.thread.start()
        logger.info(f"Reconciler started (interval: {self.interval}s)")

    def stop(self):
        """Stop the sweep."""
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Reconciler stopped")

    def _run(self):
        while self.running:
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Reconciler error: {e}", exc_info=True)

            for _ in range(self.interval):
                if not self.running:
                    break
                time.sleep(1)

    def sweep(self, now: Optional[datetime] = None) -> List[QueueItem]:
        """Fail every item stuck in processing. Returns the resulting items."""
        now = self.calendar.localize(now or self.clock())
        cutoff = now - self.config.stale_after
        stuck = call_with_retry(
            lambda: self.store.load_eligible_items(
                ItemFilter(statuses=(PROCESSING,), updated_before=cutoff)
            ),
            "Loading stuck items",
        )
        if not stuck:
            return []

        logger.warning(f"Found {len(stuck)} item(s) stuck in processing since before {cutoff.isoformat()}")
        resolved = []
        for item in stuck:
            try:
                resolved.append(self.state_machine.fail(item, now, STALE_ERROR))
            except InvalidTransition as e:
                # Finished while we were looking
                logger.debug(f"Skipping {item.id}: {e}")
            except PersistenceFailure as e:
                logger.error(f"Could not reset stuck item {item.id}: {e}")
        return resolved
