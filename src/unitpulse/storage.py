"""SQLite storage layer backing the local row sink."""

import json
import sqlite3
import time
from collections.abc import Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import structlog

from unitpulse.models import DEFAULT_TABLE, Row

log = structlog.get_logger()

SCHEMA_VERSION = 3  # rows carry their destination table


SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    service_name TEXT NOT NULL,
    instance TEXT NOT NULL,
    user_pct REAL NOT NULL,
    system_pct REAL NOT NULL,
    total_pct REAL NOT NULL,
    hostname TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    captured_at REAL NOT NULL,
    extra TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_rows_captured ON rows(captured_at);
CREATE INDEX IF NOT EXISTS idx_rows_service ON rows(service_name, captured_at);
CREATE INDEX IF NOT EXISTS idx_rows_table ON rows(table_name, captured_at);
"""


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version == SCHEMA_VERSION:
                conn.close()
                return
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="recreate",
            )
        except sqlite3.OperationalError:
            log.warning("database_unreadable", path=str(db_path), action="recreate")
        conn.close()
        db_path.unlink()
        for suffix in (".db-wal", ".db-shm"):
            side = db_path.with_suffix(suffix)
            if side.exists():
                side.unlink()

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Get schema version without error handling (for init_database use)."""
    row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
    return int(row[0]) if row else 0


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        return _get_schema_version_raw(conn)
    except sqlite3.OperationalError:
        return 0


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection usable from worker threads."""
    return sqlite3.connect(db_path, check_same_thread=False)


class DatabaseNotAvailable(Exception):
    """Raised when database doesn't exist and command should exit gracefully."""


@contextmanager
def require_database(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for commands reading stored rows.

    Raises:
        DatabaseNotAvailable: If the database doesn't exist yet.
    """
    if not db_path.exists():
        raise DatabaseNotAvailable(str(db_path))

    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def insert_rows(
    conn: sqlite3.Connection, rows: Sequence[Row], default_table: str = DEFAULT_TABLE
) -> int:
    """Insert rows in one transaction. Returns number inserted.

    A failure part way through rolls the whole batch back.
    """
    with conn:
        conn.executemany(
            """INSERT INTO rows
               (table_name, service_name, instance, user_pct, system_pct, total_pct,
                hostname, timestamp, captured_at, extra)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    r.table_name(default_table),
                    r.service_name,
                    r.instance,
                    r.user_pct,
                    r.system_pct,
                    r.total_pct,
                    r.hostname,
                    r.timestamp.isoformat(),
                    r.timestamp.timestamp(),
                    json.dumps(dict(r.extra), default=str),
                )
                for r in rows
            ],
        )
    return len(rows)


def get_rows(
    conn: sqlite3.Connection,
    limit: int = 100,
    service_name: str | None = None,
    table: str | None = None,
) -> list[Row]:
    """Most recent stored rows, oldest first.

    Each row's ``extra`` carries the table it was stored under.
    """
    query = """SELECT table_name, service_name, instance, user_pct, system_pct, total_pct,
                      hostname, timestamp, extra
               FROM rows"""
    conditions = []
    params: list = []
    if service_name:
        conditions.append("service_name = ?")
        params.append(service_name)
    if table:
        conditions.append("table_name = ?")
        params.append(table)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    result = []
    for record in conn.execute(query, params).fetchall():
        extra = json.loads(record[8])
        extra["table"] = record[0]
        result.append(
            Row(
                service_name=record[1],
                instance=record[2],
                user_pct=record[3],
                system_pct=record[4],
                total_pct=record[5],
                hostname=record[6],
                timestamp=datetime.fromisoformat(record[7]),
                extra=extra,
            )
        )
    result.reverse()
    return result


def count_rows(conn: sqlite3.Connection) -> int:
    """Total stored rows."""
    return conn.execute("SELECT COUNT(*) FROM rows").fetchone()[0]


def prune_old_rows(conn: sqlite3.Connection, days: int = 30) -> int:
    """Delete rows captured more than ``days`` ago.

    Returns:
        Number of rows deleted

    Raises:
        ValueError: If retention days < 1
    """
    if days < 1:
        raise ValueError("Retention days must be >= 1")

    cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).timestamp()
    cursor = conn.execute("DELETE FROM rows WHERE captured_at < ?", (cutoff,))
    deleted = cursor.rowcount
    conn.commit()

    log.info("prune_complete", rows_deleted=deleted)
    return deleted
