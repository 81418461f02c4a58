"""Persistence boundary of the queue engine.

``QueueStore`` is the narrow interface the engine talks to. Implementations
raise ``PersistenceFailure`` when the backing store cannot answer, so an empty
result always means "no data" and never "something went wrong".
"""
import copy
import threading
import time
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

from leadqueue.errors import DuplicateItem, PersistenceFailure
from leadqueue.logging_conf import logger
from leadqueue.queue.models import ACTIVE_STATUSES, CapacityWindow, ItemFilter, QueueItem

T = TypeVar("T")


def call_with_retry(operation: Callable[[], T], description: str, retries: int = 3,
                    base_delay: float = 0.5) -> T:
    """Run an idempotent store call, retrying transient failures with backoff."""
    retry_count = 0
    while True:
        try:
            return operation()
        except PersistenceFailure as e:
            if retry_count >= retries:
                logger.error(f"{description} failed after {retry_count + 1} attempts: {e}")
                raise
            wait_time = base_delay * (2 ** retry_count)
            logger.warning(f"{description} failed ({e}). Retrying in {wait_time:.1f}s...")
            time.sleep(wait_time)
            retry_count += 1


def sort_key(item: QueueItem):
    """Dispatch order: priority first, then arrival."""
    created = item.created_at.timestamp() if item.created_at else 0.0
    return (-int(item.priority), created, item.sequence)


class QueueStore:
    """Interface of the persistence collaborator."""

    def load_eligible_items(self, item_filter: ItemFilter) -> List[QueueItem]:
        raise NotImplementedError

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        raise NotImplementedError

    def insert_item(self, item: QueueItem) -> QueueItem:
        """Persist a new item. Raises DuplicateItem when the subject is active."""
        raise NotImplementedError

    def save_item(self, item: QueueItem, expected_status: Optional[str] = None) -> bool:
        """Write ``item``; with ``expected_status`` only if the stored status matches.

        Raises DuplicateItem when ``item`` becomes active while another item
        of the same subject is active.
        """
        raise NotImplementedError

    def load_capacity(self, start: date, end: date) -> List[CapacityWindow]:
        raise NotImplementedError

    def save_capacity(self, window: CapacityWindow, expected_committed: Optional[int] = None) -> bool:
        """Write ``window``; with ``expected_committed`` only if the stored load matches.

        A missing row counts as a stored load of 0.
        """
        raise NotImplementedError

    def close(self) -> None:
        pass


class InMemoryStore(QueueStore):
    """Thread-safe store kept in process memory.

    Backs dry runs (a detached copy of the real capacity) and tests.
    """

    def __init__(self, items: Iterable[QueueItem] = (), windows: Iterable[CapacityWindow] = ()):
        self._lock = threading.RLock()
        self._items: Dict[str, QueueItem] = {}
        self._windows: Dict[date, CapacityWindow] = {}
        self.available = True
        for item in items:
            self._items[item.id] = copy.deepcopy(item)
        for window in windows:
            self._windows[window.day] = copy.copy(window)

    def _check(self):
        if not self.available:
            raise PersistenceFailure("store unavailable")

    def load_eligible_items(self, item_filter: ItemFilter) -> List[QueueItem]:
        with self._lock:
            self._check()
            found = [
                copy.deepcopy(item) for item in self._items.values()
                if self._matches(item, item_filter)
            ]
        found.sort(key=sort_key)
        if item_filter.limit is not None:
            found = found[:item_filter.limit]
        return found

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            self._check()
            item = self._items.get(item_id)
            return copy.deepcopy(item) if item else None

    def insert_item(self, item: QueueItem) -> QueueItem:
        with self._lock:
            self._check()
            if item.id in self._items:
                raise PersistenceFailure(f"Item {item.id} already exists")
            if item.status in ACTIVE_STATUSES:
                for existing in self._items.values():
                    if existing.subject_id == item.subject_id and existing.status in ACTIVE_STATUSES:
                        raise DuplicateItem(item.subject_id)
            self._items[item.id] = copy.deepcopy(item)
            return copy.deepcopy(item)

    def save_item(self, item: QueueItem, expected_status: Optional[str] = None) -> bool:
        with self._lock:
            self._check()
            current = self._items.get(item.id)
            if current is None:
                return False
            if expected_status is not None and current.status != expected_status:
                return False
            if item.status in ACTIVE_STATUSES:
                for existing in self._items.values():
                    if (existing.id != item.id and existing.subject_id == item.subject_id
                            and existing.status in ACTIVE_STATUSES):
                        raise DuplicateItem(item.subject_id)
            self._items[item.id] = copy.deepcopy(item)
            return True

    def load_capacity(self, start: date, end: date) -> List[CapacityWindow]:
        with self._lock:
            self._check()
            return [
                copy.copy(window) for day, window in sorted(self._windows.items())
                if start <= day <= end
            ]

    def save_capacity(self, window: CapacityWindow, expected_committed: Optional[int] = None) -> bool:
        with self._lock:
            self._check()
            current = self._windows.get(window.day)
            stored = current.committed if current else 0
            if expected_committed is not None and stored != expected_committed:
                return False
            self._windows[window.day] = copy.copy(window)
            return True

    def all_items(self) -> List[QueueItem]:
        with self._lock:
            return sorted((copy.deepcopy(i) for i in self._items.values()), key=sort_key)

    @staticmethod
    def _matches(item: QueueItem, item_filter: ItemFilter) -> bool:
        if item_filter.statuses and item.status not in item_filter.statuses:
            return False
        if item_filter.subject_ids and item.subject_id not in item_filter.subject_ids:
            return False
        if item_filter.due_before is not None:
            if item.scheduled_for is None or item.scheduled_for > item_filter.due_before:
                return False
        if item_filter.updated_before is not None:
            if item.updated_at is None or item.updated_at > item_filter.updated_before:
                return False
        return True
