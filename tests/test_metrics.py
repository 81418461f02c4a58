from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from conftest import NOW, make_config

from leadqueue.app import QueueService
from leadqueue.business_calendar import BusinessCalendar
from leadqueue.metrics import CRITICAL, DEGRADED, HEALTHY, classify_health, compute_metrics
from leadqueue.queue.models import COMPLETED, FAILED, QueueItem
from leadqueue.queue.store import InMemoryStore


@pytest.mark.parametrize("depth, rate, available, expected", [
    (0, 1.0, True, HEALTHY),
    (200, 1.0, True, HEALTHY),
    (201, 1.0, True, DEGRADED),
    (0, 0.85, True, HEALTHY),
    (0, 0.84, True, DEGRADED),
    (0, 0.5, True, DEGRADED),
    (0, 0.49, True, CRITICAL),
    (0, 1.0, False, CRITICAL),
])
def test_health_thresholds(depth, rate, available, expected) -> None:
    assert classify_health(depth, rate, 100, available) == expected


def _finished(subject_id: str, status: str, at: datetime) -> QueueItem:
    item = QueueItem.create(subject_id, now=at - timedelta(hours=1))
    if status == COMPLETED:
        return item.evolve(status=COMPLETED, completed_at=at, updated_at=at)
    return item.evolve(status=FAILED, attempts=item.max_attempts, updated_at=at)


def test_success_rate_over_the_window() -> None:
    config = make_config()
    items = [_finished(f"ok-{i}", COMPLETED, NOW - timedelta(hours=1)) for i in range(8)]
    items += [_finished(f"bad-{i}", FAILED, NOW - timedelta(hours=1)) for i in range(2)]
    # Outside the trailing window
    items += [_finished(f"old-{i}", FAILED, NOW - timedelta(days=30)) for i in range(5)]

    snapshot = compute_metrics(items, NOW, BusinessCalendar(config.policy), config)

    assert snapshot.success_rate == 0.8
    assert snapshot.queue_health == DEGRADED
    assert snapshot.processed_today == 8
    assert snapshot.hard_failures == 7
    assert snapshot.last_processed_at == NOW - timedelta(hours=1)


def test_empty_queue_is_healthy() -> None:
    config = make_config()
    snapshot = compute_metrics([], NOW, BusinessCalendar(config.policy), config)
    assert snapshot.success_rate == 1.0
    assert snapshot.queue_health == HEALTHY
    assert snapshot.queue_depth == 0
    assert snapshot.is_business_day
    assert snapshot.next_processing_time == NOW


def test_metrics_reflect_prepared_queue(service: QueueService) -> None:
    service.prepare_queue(["a", "b", "c"], now=NOW)

    metrics = service.get_metrics(NOW)

    assert metrics.queue_depth == 3
    assert metrics.counts["queued"] == 3
    assert metrics.committed_today == 3
    assert metrics.remaining_capacity_today == 97
    assert metrics.data_source_available


def test_deep_queue_is_degraded() -> None:
    service = QueueService(InMemoryStore(), make_config(daily_limit=10, horizon_days=60), clock=lambda: NOW)
    service.prepare_queue([f"lead-{i}" for i in range(21)], now=NOW)
    assert service.get_metrics(NOW).queue_health == DEGRADED


def test_unreachable_store_reports_critical_without_raising(service: QueueService) -> None:
    service.store.available = False

    metrics = service.get_metrics()

    assert metrics.queue_health == CRITICAL
    assert metrics.data_source_available is False
    assert metrics.error


def test_critical_snapshot_is_not_cached(service: QueueService) -> None:
    service.store.available = False
    assert service.get_metrics().queue_health == CRITICAL
    service.store.available = True
    assert service.get_metrics().queue_health == HEALTHY


def test_cache_holds_until_invalidated(service: QueueService) -> None:
    first = service.get_metrics()
    service.store.insert_item(QueueItem.create("late", now=NOW))

    assert service.get_metrics() is first

    service.monitor.invalidate()
    assert service.get_metrics().queue_depth == 1


def test_processed_today_uses_policy_timezone() -> None:
    config = make_config(timezone="America/New_York")
    # 02:00 UTC on Tuesday is still Monday evening in New York
    now = datetime(2026, 10, 20, 2, 0, tzinfo=timezone.utc)
    done = _finished("a", COMPLETED, datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))

    snapshot = compute_metrics([done], now, BusinessCalendar(config.policy), config)

    assert snapshot.processed_today == 1
