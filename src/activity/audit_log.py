"""SQLite-backed audit log: the append-only event store behind the activity feed.

The activity aggregator only depends on the ``AuditLogStore`` protocol
(``append`` / ``query``). ``SqliteAuditLog`` is the shipped implementation:
one connection opened with check_same_thread=False so calls can run in
worker threads, serialized by a lock. All statements are parameterized and
the schema is auto-created via CREATE TABLE IF NOT EXISTS (idempotent).
"""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from src.activity.models import AuditLogItem
from src.config import get_settings

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS audit_log (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    action     TEXT NOT NULL,
    details    TEXT NOT NULL DEFAULT '{}',
    timestamp  TEXT NOT NULL,
    success    INTEGER NOT NULL DEFAULT 1,
    user_id    TEXT
);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
"""


class AuditLogStore(Protocol):
    """Append-only log of system events, queried newest first."""

    def append(
        self,
        action: str,
        details: dict[str, Any],
        success: bool = True,
        actor_id: str | None = None,
    ) -> int | None: ...

    def query(self, limit: int, offset: int = 0) -> list[AuditLogItem]: ...


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrent reads.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Raises:
        ValueError: If the audit log is not configured (empty db path).
    """
    if db_path is None:
        db_path = get_settings().audit_db_path
    if not db_path:
        msg = "Audit log not configured (AUDIT_DB_PATH is empty)"
        raise ValueError(msg)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def is_audit_log_configured() -> bool:
    try:
        return bool(get_settings().audit_db_path)
    except Exception:
        return False


def _row_to_item(row: sqlite3.Row) -> AuditLogItem:
    try:
        details = json.loads(row["details"])
    except (json.JSONDecodeError, TypeError):
        logger.warning("Audit log row %s has unreadable details", row["id"])
        details = {}
    return AuditLogItem(
        id=row["id"],
        action=row["action"],
        details=details if isinstance(details, dict) else {},
        timestamp=row["timestamp"],
        success=bool(row["success"]),
        user_id=row["user_id"],
    )


class SqliteAuditLog:
    """``AuditLogStore`` over a single SQLite connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def append(
        self,
        action: str,
        details: dict[str, Any],
        success: bool = True,
        actor_id: str | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> int:
        """Append one entry. Returns the new row ID.

        ``timestamp`` defaults to now; pass one to import historical events.
        Naive timestamps are taken as UTC.
        """
        when = timestamp or datetime.now(UTC)
        if when.tzinfo is None:
            when = when.replace(tzinfo=UTC)
        ts = when.astimezone(UTC).isoformat(timespec="microseconds")
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO audit_log (action, details, timestamp, success, user_id) VALUES (?, ?, ?, ?, ?)",
                (action, json.dumps(details, default=str), ts, int(success), actor_id),
            )
            self._conn.commit()
        return cursor.lastrowid or 0

    def query(self, limit: int, offset: int = 0) -> list[AuditLogItem]:
        """Return up to ``limit`` entries, newest first (ties broken by insertion order)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM audit_log ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [_row_to_item(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM audit_log").fetchone()
        return int(row["n"])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_audit_log(db_path: str | None = None) -> SqliteAuditLog:
    """Open the audit log with its schema initialized. Convenience wrapper."""
    conn = get_connection(db_path)
    init_schema(conn)
    return SqliteAuditLog(conn)
