from __future__ import annotations

import threading
from datetime import date

import pytest

from leadqueue.capacity import CapacityLedger, week_bounds
from leadqueue.errors import PersistenceFailure
from leadqueue.queue.models import CapacityWindow
from leadqueue.queue.store import InMemoryStore

MONDAY = date(2026, 10, 19)


def test_reserve_grants_up_to_the_daily_limit() -> None:
    ledger = CapacityLedger(InMemoryStore(), daily_limit=10)
    assert ledger.reserve(MONDAY, 7) == 7
    assert ledger.reserve(MONDAY, 7) == 3
    assert ledger.reserve(MONDAY, 1) == 0
    assert ledger.window(MONDAY).committed == 10
    assert ledger.remaining_capacity(MONDAY) == 0


def test_missing_window_reads_as_empty() -> None:
    ledger = CapacityLedger(InMemoryStore(), daily_limit=10)
    window = ledger.window(MONDAY)
    assert window.committed == 0
    assert window.limit == 10
    assert ledger.remaining_capacity(MONDAY) == 10


def test_release_never_goes_below_zero() -> None:
    ledger = CapacityLedger(InMemoryStore(), daily_limit=10)
    ledger.reserve(MONDAY, 2)
    ledger.release(MONDAY, 5)
    assert ledger.window(MONDAY).committed == 0


def test_configured_limit_wins_over_stored_limit() -> None:
    store = InMemoryStore(windows=[CapacityWindow(day=MONDAY, limit=5, committed=3)])
    ledger = CapacityLedger(store, daily_limit=10)
    assert ledger.reserve(MONDAY, 20) == 7


def test_over_committed_window_grants_nothing() -> None:
    store = InMemoryStore(windows=[CapacityWindow(day=MONDAY, limit=10, committed=12)])
    ledger = CapacityLedger(store, daily_limit=10)
    assert ledger.reserve(MONDAY, 1) == 0
    assert ledger.window(MONDAY).over_committed == 2


def test_weekly_limit_caps_the_week() -> None:
    ledger = CapacityLedger(InMemoryStore(), daily_limit=10, weekly_limit=15)
    assert ledger.reserve(date(2026, 10, 19), 10) == 10
    assert ledger.reserve(date(2026, 10, 20), 10) == 5
    assert ledger.reserve(date(2026, 10, 21), 10) == 0
    assert ledger.remaining_capacity(date(2026, 10, 22)) == 0
    # Next ISO week starts fresh
    assert ledger.reserve(date(2026, 10, 26), 10) == 10


def test_week_bounds() -> None:
    assert week_bounds(date(2026, 10, 22)) == (date(2026, 10, 19), date(2026, 10, 25))
    assert week_bounds(date(2026, 10, 25)) == (date(2026, 10, 19), date(2026, 10, 25))


def test_concurrent_reservations_never_exceed_limit() -> None:
    ledger = CapacityLedger(InMemoryStore(), daily_limit=100)
    barrier = threading.Barrier(2)
    grants = []

    def reserve() -> None:
        barrier.wait()
        grants.append(ledger.reserve(MONDAY, 60))

    threads = [threading.Thread(target=reserve) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(grants) == 100
    assert sorted(grants) == [40, 60]
    assert ledger.window(MONDAY).committed == 100


def test_many_concurrent_reservations() -> None:
    ledger = CapacityLedger(InMemoryStore(), daily_limit=100)
    barrier = threading.Barrier(10)
    grants = []
    lock = threading.Lock()

    def reserve() -> None:
        barrier.wait()
        for _ in range(15):
            granted = ledger.reserve(MONDAY, 1)
            with lock:
                grants.append(granted)

    threads = [threading.Thread(target=reserve) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(grants) == 100
    assert ledger.window(MONDAY).committed == 100


def test_detached_ledger_leaves_store_untouched() -> None:
    store = InMemoryStore(windows=[CapacityWindow(day=MONDAY, limit=10, committed=4)])
    ledger = CapacityLedger(store, daily_limit=10)
    dry = ledger.detached([MONDAY, date(2026, 10, 20)])

    assert dry.reserve(MONDAY, 10) == 6
    assert dry.window(MONDAY).committed == 10
    assert ledger.window(MONDAY).committed == 4


class _ContendedStore(InMemoryStore):
    """Every conditional capacity write loses to a concurrent writer."""

    def save_capacity(self, window, expected_committed=None):
        return False


class _FlakyCapacityStore(InMemoryStore):
    """Capacity writes fail after landing, as with a dropped connection."""

    def __init__(self) -> None:
        super().__init__()
        self.writes = 0

    def save_capacity(self, window, expected_committed=None):
        self.writes += 1
        super().save_capacity(window, expected_committed)
        raise PersistenceFailure("connection lost")


def test_endless_contention_grants_nothing() -> None:
    ledger = CapacityLedger(_ContendedStore(), daily_limit=10)
    assert ledger.reserve(MONDAY, 3) == 0


def test_capacity_writes_are_not_retried() -> None:
    store = _FlakyCapacityStore()
    ledger = CapacityLedger(store, daily_limit=10)

    with pytest.raises(PersistenceFailure):
        ledger.reserve(MONDAY, 4)

    assert store.writes == 1
    assert ledger.window(MONDAY).committed == 4
