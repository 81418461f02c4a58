"""PostgreSQL persistence for queue items and capacity windows."""
import threading
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json, RealDictCursor

from leadqueue import settings
from leadqueue.errors import DuplicateItem, PersistenceFailure
from leadqueue.logging_conf import logger
from leadqueue.queue.models import CapacityWindow, ItemFilter, Priority, QueueItem
from leadqueue.queue.store import QueueStore

SCHEMA = """
CREATE TABLE IF NOT EXISTS lead_queue_items (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    status TEXT NOT NULL,
    priority SMALLINT NOT NULL DEFAULT 1,
    scheduled_for TIMESTAMPTZ,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    sequence INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    queued_at TIMESTAMPTZ,
    processed_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    last_error TEXT,
    provider_message_id TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE UNIQUE INDEX IF NOT EXISTS lead_queue_items_active_subject
    ON lead_queue_items (subject_id)
    WHERE status IN ('pending', 'queued', 'processing');

CREATE INDEX IF NOT EXISTS lead_queue_items_due
    ON lead_queue_items (status, scheduled_for);

CREATE TABLE IF NOT EXISTS lead_capacity_windows (
    day DATE PRIMARY KEY,
    daily_limit INTEGER NOT NULL,
    committed INTEGER NOT NULL DEFAULT 0 CHECK (committed >= 0)
);
"""

ITEM_COLUMNS = (
    "id", "subject_id", "status", "priority", "scheduled_for", "attempts", "max_attempts",
    "sequence", "created_at", "updated_at", "queued_at", "processed_at", "completed_at",
    "last_error", "provider_message_id", "metadata",
)


class PostgresStore(QueueStore):
    """Queue store backed by PostgreSQL.

    One connection per store, shared by the dispatcher, reconciler and
    service threads under a lock. Conditional writes are single statements,
    so their atomicity comes from the database rather than from the lock.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self._conn = None
        self._lock = threading.RLock()

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.dsn)
        return self._conn

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn and not self._conn.closed:
                self._conn.close()
            self._conn = None

    @contextmanager
    def cursor(self):
        """Cursor with auto-commit/rollback; driver errors become PersistenceFailure."""
        with self._lock:
            try:
                conn = self.conn
            except psycopg2.Error as e:
                raise PersistenceFailure(f"Cannot connect to database: {e}")
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield cur
                conn.commit()
            except psycopg2.Error as e:
                self._rollback(conn)
                if isinstance(e, pg_errors.UniqueViolation):
                    raise
                raise PersistenceFailure(f"Database error: {e}")
            except Exception:
                self._rollback(conn)
                raise
            finally:
                cur.close()

    def ensure_schema(self) -> None:
        with self.cursor() as cur:
            cur.execute(SCHEMA)
        logger.info("Queue schema ready")

    def load_eligible_items(self, item_filter: ItemFilter) -> List[QueueItem]:
        clauses = []
        params: List[Any] = []
        if item_filter.statuses:
            clauses.append("status = ANY(%s)")
            params.append(list(item_filter.statuses))
        if item_filter.subject_ids:
            clauses.append("subject_id = ANY(%s)")
            params.append(list(item_filter.subject_ids))
        if item_filter.due_before is not None:
            clauses.append("scheduled_for <= %s")
            params.append(item_filter.due_before)
        if item_filter.updated_before is not None:
            clauses.append("updated_at <= %s")
            params.append(item_filter.updated_before)

        query = f"SELECT {', '.join(ITEM_COLUMNS)} FROM lead_queue_items"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY priority DESC, created_at ASC, sequence ASC"
        if item_filter.limit is not None:
            query += " LIMIT %s"
            params.append(item_filter.limit)

        with self.cursor() as cur:
            cur.execute(query, params)
            return [_row_to_item(row) for row in cur.fetchall()]

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {', '.join(ITEM_COLUMNS)} FROM lead_queue_items WHERE id = %s",
                (item_id,),
            )
            row = cur.fetchone()
            return _row_to_item(row) if row else None

    def insert_item(self, item: QueueItem) -> QueueItem:
        placeholders = ", ".join(["%s"] * len(ITEM_COLUMNS))
        try:
            with self.cursor() as cur:
                cur.execute(
                    f"INSERT INTO lead_queue_items ({', '.join(ITEM_COLUMNS)}) VALUES ({placeholders})",
                    _item_params(item),
                )
        except pg_errors.UniqueViolation as e:
            if "lead_queue_items_active_subject" in str(e):
                raise DuplicateItem(item.subject_id)
            raise PersistenceFailure(f"Item {item.id} already exists")
        return item

    def save_item(self, item: QueueItem, expected_status: Optional[str] = None) -> bool:
        columns = ITEM_COLUMNS[1:]
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = _item_params(item)[1:] + (item.id,)
        query = f"UPDATE lead_queue_items SET {assignments} WHERE id = %s"
        if expected_status is not None:
            query += " AND status = %s"
            params += (expected_status,)
        query += " RETURNING id"

        try:
            with self.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone() is not None
        except pg_errors.UniqueViolation:
            raise DuplicateItem(item.subject_id)

    def load_capacity(self, start: date, end: date) -> List[CapacityWindow]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT day, daily_limit, committed
                FROM lead_capacity_windows
                WHERE day BETWEEN %s AND %s
                ORDER BY day
            """, (start, end))
            return [
                CapacityWindow(day=row["day"], limit=row["daily_limit"], committed=row["committed"])
                for row in cur.fetchall()
            ]

    def save_capacity(self, window: CapacityWindow, expected_committed: Optional[int] = None) -> bool:
        with self.cursor() as cur:
            if expected_committed is None:
                cur.execute("""
                    INSERT INTO lead_capacity_windows (day, daily_limit, committed)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (day) DO UPDATE
                    SET daily_limit = EXCLUDED.daily_limit, committed = EXCLUDED.committed
                    RETURNING day
                """, (window.day, window.limit, window.committed))
            elif expected_committed == 0:
                # A missing row counts as committed 0
                cur.execute("""
                    INSERT INTO lead_capacity_windows (day, daily_limit, committed)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (day) DO UPDATE
                    SET daily_limit = EXCLUDED.daily_limit, committed = EXCLUDED.committed
                    WHERE lead_capacity_windows.committed = 0
                    RETURNING day
                """, (window.day, window.limit, window.committed))
            else:
                cur.execute("""
                    UPDATE lead_capacity_windows
                    SET daily_limit = %s, committed = %s
                    WHERE day = %s AND committed = %s
                    RETURNING day
                """, (window.limit, window.committed, window.day, expected_committed))
            return cur.fetchone() is not None

    @staticmethod
    def _rollback(conn):
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")


def _item_params(item: QueueItem) -> tuple:
    return (
        item.id, item.subject_id, item.status, int(item.priority), item.scheduled_for,
        item.attempts, item.max_attempts, item.sequence, item.created_at, item.updated_at,
        item.queued_at, item.processed_at, item.completed_at, item.last_error,
        item.provider_message_id, Json(item.metadata or {}),
    )


def _row_to_item(row: Dict[str, Any]) -> QueueItem:
    return QueueItem(
        id=row["id"],
        subject_id=row["subject_id"],
        status=row["status"],
        priority=Priority(row["priority"]),
        scheduled_for=row["scheduled_for"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        sequence=row["sequence"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        queued_at=row["queued_at"],
        processed_at=row["processed_at"],
        completed_at=row["completed_at"],
        last_error=row["last_error"],
        provider_message_id=row["provider_message_id"],
        metadata=row["metadata"] or {},
    )
