from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from leadqueue.app import QueueService
from leadqueue.business_calendar import BusinessCalendar
from leadqueue.capacity import CapacityLedger
from leadqueue.policy import QueueConfig
from leadqueue.queue.distribution import DistributionEngine
from leadqueue.queue.models import QueueItem
from leadqueue.queue.state_machine import QueueStateMachine
from leadqueue.queue.store import InMemoryStore
from leadqueue.webhook_client import SendResult

# Monday, inside business hours
NOW = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def make_config(**overrides: Any) -> QueueConfig:
    raw: Dict[str, Any] = {"daily_limit": 100, "retry_base_delay_seconds": 60}
    raw.update(overrides)
    return QueueConfig.from_mapping(raw)


class FakeSender:
    """Records sends; ``outcome(subject_id)`` decides what each send does."""

    def __init__(self, outcome: Optional[Callable[[str], SendResult]] = None) -> None:
        self.outcome = outcome
        self.calls: List[tuple] = []

    def send(self, subject_id: str, payload: Dict[str, Any], idempotency_key: str) -> SendResult:
        self.calls.append((subject_id, payload, idempotency_key))
        if self.outcome is None:
            return SendResult(success=True, provider_message_id=f"msg-{subject_id}")
        return self.outcome(subject_id)

    @property
    def subjects(self) -> List[str]:
        return [call[0] for call in self.calls]


class Parts:
    def __init__(self, config: QueueConfig, store: Optional[InMemoryStore] = None) -> None:
        self.config = config
        self.store = store or InMemoryStore()
        self.calendar = BusinessCalendar(config.policy)
        self.ledger = CapacityLedger(self.store, config.daily_limit, config.weekly_limit)
        self.state_machine = QueueStateMachine(self.store, self.ledger, self.calendar, config)
        self.engine = DistributionEngine(self.calendar, config, self.state_machine)

    def pending(self, count: int, prefix: str = "lead", **kwargs: Any) -> List[QueueItem]:
        items = []
        for i in range(count):
            item = QueueItem.create(f"{prefix}-{i}", sequence=i, now=NOW, **kwargs)
            items.append(self.store.insert_item(item))
        return items

    def queued(self, subject_id: str, at: datetime = NOW) -> QueueItem:
        item = self.store.insert_item(QueueItem.create(subject_id, now=NOW))
        assert self.ledger.reserve(self.calendar.localize(at).date(), 1) == 1
        return self.state_machine.enqueue(item, at, NOW)


@pytest.fixture
def config() -> QueueConfig:
    return make_config()


@pytest.fixture
def parts(config: QueueConfig) -> Parts:
    return Parts(config)


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def service(config: QueueConfig, sender: FakeSender) -> QueueService:
    return QueueService(InMemoryStore(), config, sender, clock=lambda: NOW)


@pytest.fixture
def no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Skip the sleeps between store retries."""
    monkeypatch.setattr(time, "sleep", lambda _seconds: None)
