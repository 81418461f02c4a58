from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2 import errors as pg_errors

from conftest import NOW

from leadqueue import db
from leadqueue.db import PostgresStore
from leadqueue.errors import DuplicateItem, PersistenceFailure
from leadqueue.queue.models import CapacityWindow, ItemFilter, Priority, QueueItem


@pytest.fixture
def cursor(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    cur = MagicMock()
    conn = MagicMock()
    conn.closed = False
    conn.cursor.return_value = cur
    monkeypatch.setattr(db.psycopg2, "connect", lambda dsn: conn)
    cur.connection = conn
    return cur


@pytest.fixture
def store(cursor: MagicMock) -> PostgresStore:
    return PostgresStore("postgresql://queue@localhost/test")


def _row(**overrides):
    row = {
        "id": "item-1", "subject_id": "lead-1", "status": "queued", "priority": 2,
        "scheduled_for": NOW, "attempts": 1, "max_attempts": 3, "sequence": 0,
        "created_at": NOW, "updated_at": NOW, "queued_at": NOW, "processed_at": None,
        "completed_at": None, "last_error": "boom", "provider_message_id": None,
        "metadata": {"source": "import"},
    }
    row.update(overrides)
    return row


def test_rows_become_queue_items(store: PostgresStore, cursor: MagicMock) -> None:
    cursor.fetchall.return_value = [_row()]

    items = store.load_eligible_items(ItemFilter(statuses=("queued",), due_before=NOW, limit=5))

    assert items[0].priority == Priority.HIGH
    assert items[0].metadata == {"source": "import"}
    query, params = cursor.execute.call_args[0]
    assert "status = ANY(%s)" in query
    assert "scheduled_for <= %s" in query
    assert query.rstrip().endswith("LIMIT %s")
    assert params == [["queued"], NOW, 5]


def test_save_item_is_conditional_on_status(store: PostgresStore, cursor: MagicMock) -> None:
    cursor.fetchone.return_value = None
    item = QueueItem(id="item-1", subject_id="lead-1", status="processing", created_at=NOW, updated_at=NOW)

    assert store.save_item(item, expected_status="queued") is False

    query, params = cursor.execute.call_args[0]
    assert "WHERE id = %s AND status = %s" in query
    assert params[-2:] == ("item-1", "queued")
    cursor.connection.commit.assert_called_once()


def test_capacity_update_checks_committed(store: PostgresStore, cursor: MagicMock) -> None:
    cursor.fetchone.return_value = {"day": date(2026, 10, 19)}

    assert store.save_capacity(CapacityWindow(date(2026, 10, 19), 100, 12), expected_committed=10)

    query, params = cursor.execute.call_args[0]
    assert "committed = %s" in query
    assert params == (100, 12, date(2026, 10, 19), 10)


def test_driver_errors_become_persistence_failures(store: PostgresStore, cursor: MagicMock) -> None:
    cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

    with pytest.raises(PersistenceFailure):
        store.get_item("item-1")
    cursor.connection.rollback.assert_called_once()


def test_active_subject_violation_is_a_duplicate(store: PostgresStore, cursor: MagicMock) -> None:
    cursor.execute.side_effect = pg_errors.UniqueViolation(
        'duplicate key value violates unique constraint "lead_queue_items_active_subject"'
    )

    with pytest.raises(DuplicateItem):
        store.insert_item(QueueItem.create("lead-1", now=NOW))


def test_connect_failure_is_a_persistence_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(dsn):
        raise psycopg2.OperationalError("could not connect")

    monkeypatch.setattr(db.psycopg2, "connect", refuse)
    with pytest.raises(PersistenceFailure):
        PostgresStore("postgresql://queue@localhost/test").load_capacity(date(2026, 10, 19), date(2026, 10, 19))
