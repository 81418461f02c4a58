from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from conftest import NOW, Parts, make_config

from leadqueue.errors import ConfigurationError, PersistenceFailure
from leadqueue.policy import QueueConfig
from leadqueue.queue.distribution import DistributionEngine
from leadqueue.queue.models import (
    CAPACITY_EXHAUSTED, INVALID_TRANSITION, PENDING, PERSISTENCE_FAILED, QUEUED, Priority, QueueItem,
)
from leadqueue.queue.store import InMemoryStore

WEEK = [date(2026, 10, d) for d in (19, 20, 21, 22, 23)]


def test_five_hundred_items_fill_five_working_days() -> None:
    parts = Parts(make_config(daily_limit=100))
    items = parts.pending(500)

    result = parts.engine.distribute(items, parts.ledger, NOW)

    assert result.rejected == []
    assert result.per_day() == {day: 100 for day in WEEK}
    for day in WEEK:
        assert parts.ledger.window(day).committed == 100
    assert all(item.status == QUEUED for item in parts.store.all_items())


def test_holidays_are_skipped() -> None:
    parts = Parts(make_config(daily_limit=100, holidays=["2026-10-21"]))
    result = parts.engine.distribute(parts.pending(500), parts.ledger, NOW)
    assert sorted(result.per_day()) == [
        date(2026, 10, 19), date(2026, 10, 20), date(2026, 10, 22), date(2026, 10, 23), date(2026, 10, 26),
    ]


def test_first_day_starts_now_later_days_at_opening() -> None:
    parts = Parts(make_config(daily_limit=1))
    result = parts.engine.distribute(parts.pending(2), parts.ledger, NOW)
    assert [a.scheduled_for for a in result.scheduled] == [
        NOW,
        datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc),
    ]


def test_weekend_start_moves_to_monday() -> None:
    parts = Parts(make_config(daily_limit=10))
    saturday = datetime(2026, 10, 24, 12, 0, tzinfo=timezone.utc)
    result = parts.engine.distribute(parts.pending(3), parts.ledger, saturday)
    assert result.per_day() == {date(2026, 10, 26): 3}


@pytest.mark.parametrize("count, expected", [
    (10, {date(2026, 10, 19): 10}),
    (11, {date(2026, 10, 19): 10, date(2026, 10, 20): 1}),
])
def test_limit_boundary(count, expected) -> None:
    parts = Parts(make_config(daily_limit=10))
    result = parts.engine.distribute(parts.pending(count), parts.ledger, NOW)
    assert result.per_day() == expected


def test_existing_load_is_respected() -> None:
    parts = Parts(make_config(daily_limit=100))
    parts.ledger.reserve(date(2026, 10, 19), 95)
    result = parts.engine.distribute(parts.pending(10), parts.ledger, NOW)
    assert result.per_day() == {date(2026, 10, 19): 5, date(2026, 10, 20): 5}
    assert parts.ledger.window(date(2026, 10, 19)).committed == 100


def test_higher_priority_gets_earlier_days() -> None:
    parts = Parts(make_config(daily_limit=2))
    items = [
        parts.store.insert_item(QueueItem.create(name, priority=priority, sequence=i, now=NOW))
        for i, (name, priority) in enumerate([
            ("low", Priority.LOW),
            ("medium-1", Priority.MEDIUM),
            ("urgent", Priority.URGENT),
            ("medium-2", Priority.MEDIUM),
            ("high", Priority.HIGH),
        ])
    ]

    result = parts.engine.distribute(items, parts.ledger, NOW)
    by_subject = {a.item.subject_id: a.scheduled_for.date() for a in result.scheduled}

    assert by_subject["urgent"] == by_subject["high"] == date(2026, 10, 19)
    # Arrival order among equals
    assert by_subject["medium-1"] == by_subject["medium-2"] == date(2026, 10, 20)
    assert by_subject["low"] == date(2026, 10, 21)


def test_horizon_exhaustion_rejects_leftovers() -> None:
    parts = Parts(make_config(daily_limit=3, horizon_days=2))
    result = parts.engine.distribute(parts.pending(10), parts.ledger, NOW)

    assert len(result.scheduled) == 6
    assert len(result.rejected) == 4
    assert {r.reason for r in result.rejected} == {CAPACITY_EXHAUSTED}
    leftovers = {r.item_id for r in result.rejected}
    assert all(i.status == PENDING for i in parts.store.all_items() if i.id in leftovers)


def test_dry_runs_are_deterministic_and_persist_nothing() -> None:
    parts = Parts(make_config(daily_limit=40))
    items = parts.pending(100)

    first = parts.engine.distribute(items, parts.ledger.detached(WEEK), NOW, commit=False)
    second = parts.engine.distribute(items, parts.ledger.detached(WEEK), NOW, commit=False)

    plan = [(a.item.id, a.scheduled_for) for a in first.scheduled]
    assert plan == [(a.item.id, a.scheduled_for) for a in second.scheduled]
    assert first.per_day() == {WEEK[0]: 40, WEEK[1]: 40, WEEK[2]: 20}
    assert parts.ledger.window(WEEK[0]).committed == 0
    assert all(item.status == PENDING for item in parts.store.all_items())


def test_non_pending_items_are_rejected() -> None:
    parts = Parts(make_config())
    queued = parts.queued("already")
    result = parts.engine.distribute([queued], parts.ledger, NOW)
    assert [r.reason for r in result.rejected] == [INVALID_TRANSITION]


class _FlakyStore(InMemoryStore):
    def __init__(self, failing_subject: str) -> None:
        super().__init__()
        self.failing_subject = failing_subject

    def save_item(self, item, expected_status=None):
        if item.subject_id == self.failing_subject:
            raise PersistenceFailure("write timeout")
        return super().save_item(item, expected_status)


def test_failed_persistence_releases_capacity(no_backoff) -> None:
    parts = Parts(make_config(daily_limit=10), store=_FlakyStore("lead-1"))
    result = parts.engine.distribute(parts.pending(3), parts.ledger, NOW)

    assert len(result.scheduled) == 2
    assert [(r.subject_id, r.reason) for r in result.rejected] == [("lead-1", PERSISTENCE_FAILED)]
    assert parts.ledger.window(date(2026, 10, 19)).committed == 2


def test_no_day_is_over_committed() -> None:
    parts = Parts(make_config(daily_limit=7))
    parts.engine.distribute(parts.pending(30), parts.ledger, NOW)
    parts.engine.distribute(parts.pending(30, prefix="more"), parts.ledger, NOW)
    for window in parts.store.load_capacity(date(2026, 10, 1), date(2026, 12, 31)):
        assert window.committed <= 7


def test_other_overflow_strategies_are_rejected() -> None:
    parts = Parts(make_config())
    with pytest.raises(ConfigurationError):
        DistributionEngine(parts.calendar, QueueConfig(overflow_strategy="reject"))
