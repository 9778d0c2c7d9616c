"""Tests for SQLite storage layer."""

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tests.conftest import make_row
from unitpulse.storage import (
    SCHEMA_VERSION,
    DatabaseNotAvailable,
    count_rows,
    get_connection,
    get_rows,
    get_schema_version,
    init_database,
    insert_rows,
    prune_old_rows,
    require_database,
)


def test_init_database_creates_file(tmp_path: Path):
    """init_database creates SQLite file."""
    db_path = tmp_path / "test.db"
    init_database(db_path)
    assert db_path.exists()


def test_init_database_creates_parent_dirs(tmp_path: Path):
    """Missing parent directories are created."""
    db_path = tmp_path / "a" / "b" / "test.db"
    init_database(db_path)
    assert db_path.exists()


def test_init_database_enables_wal(tmp_path: Path):
    """init_database enables WAL journal mode."""
    db_path = tmp_path / "test.db"
    init_database(db_path)

    conn = sqlite3.connect(db_path)
    result = conn.execute("PRAGMA journal_mode").fetchone()
    conn.close()
    assert result[0] == "wal"


def test_init_database_creates_tables(tmp_path: Path):
    """init_database creates required tables."""
    db_path = tmp_path / "test.db"
    init_database(db_path)

    conn = sqlite3.connect(db_path)
    tables = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
    ).fetchall()
    conn.close()

    table_names = [t[0] for t in tables]
    assert "rows" in table_names
    assert "daemon_state" in table_names


def test_init_database_sets_schema_version(tmp_path: Path):
    """init_database sets schema version in daemon_state."""
    db_path = tmp_path / "test.db"
    init_database(db_path)

    conn = sqlite3.connect(db_path)
    version = get_schema_version(conn)
    conn.close()
    assert version == SCHEMA_VERSION


def test_init_database_keeps_current_schema(initialized_db: Path):
    """Re-initializing a current database keeps its rows."""
    conn = get_connection(initialized_db)
    insert_rows(conn, [make_row()])
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert count_rows(conn) == 1
    conn.close()


def test_init_database_recreates_on_version_mismatch(initialized_db: Path):
    """An old schema version means a fresh database."""
    conn = get_connection(initialized_db)
    insert_rows(conn, [make_row()])
    conn.execute("UPDATE daemon_state SET value = '1' WHERE key = 'schema_version'")
    conn.commit()
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    assert count_rows(conn) == 0
    conn.close()


def test_init_database_recreates_unreadable_file(tmp_path: Path):
    """A database without our tables is replaced."""
    db_path = tmp_path / "test.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE unrelated (x INTEGER)")
    conn.commit()
    conn.close()

    init_database(db_path)

    conn = sqlite3.connect(db_path)
    assert get_schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_get_schema_version_no_table(tmp_path: Path):
    """A database without daemon_state reports version 0."""
    conn = sqlite3.connect(tmp_path / "empty.db")
    assert get_schema_version(conn) == 0
    conn.close()


# --- Row Tests ---


def test_insert_and_get_rows(initialized_db: Path):
    """Rows come back oldest first with extras decoded."""
    conn = get_connection(initialized_db)
    rows = [make_row(instance=str(i), table="t", n=i) for i in range(3)]

    assert insert_rows(conn, rows) == 3
    stored = get_rows(conn)
    conn.close()

    assert [r.instance for r in stored] == ["0", "1", "2"]
    assert stored[2].extra == {"table": "t", "n": 2}
    assert stored[0].timestamp.tzinfo is not None


def test_get_rows_limit_keeps_most_recent(initialized_db: Path):
    """The limit selects the newest rows but still returns them in order."""
    conn = get_connection(initialized_db)
    insert_rows(conn, [make_row(instance=str(i)) for i in range(5)])

    stored = get_rows(conn, limit=2)
    conn.close()

    assert [r.instance for r in stored] == ["3", "4"]


def test_get_rows_filter_by_service(initialized_db: Path):
    """Only the named service's rows are returned."""
    conn = get_connection(initialized_db)
    insert_rows(
        conn,
        [
            make_row(service_name="a.service"),
            make_row(service_name="b.service"),
            make_row(service_name="a.service"),
        ],
    )

    stored = get_rows(conn, service_name="a.service")
    conn.close()

    assert len(stored) == 2
    assert {r.service_name for r in stored} == {"a.service"}


def test_get_rows_empty(initialized_db: Path):
    """An empty table gives an empty list."""
    conn = get_connection(initialized_db)
    assert get_rows(conn) == []
    assert count_rows(conn) == 0
    conn.close()


def test_insert_rows_serializes_odd_extras(initialized_db: Path):
    """Extra values JSON can't encode are stored as text."""
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    conn = get_connection(initialized_db)
    insert_rows(conn, [make_row(seen_at=when)])

    (row,) = get_rows(conn)
    conn.close()

    assert row.extra["seen_at"] == str(when)


def test_insert_rows_rolls_back_partial_batch(initialized_db: Path):
    """A row failing part way through leaves none of its batch behind."""
    conn = get_connection(initialized_db)

    with pytest.raises(sqlite3.IntegrityError):
        insert_rows(conn, [make_row(instance="ok"), make_row(service_name=None)])
    assert count_rows(conn) == 0

    insert_rows(conn, [make_row(instance="later")])
    conn.close()

    conn = get_connection(initialized_db)
    assert [r.instance for r in get_rows(conn)] == ["later"]
    conn.close()


def test_insert_rows_default_table(initialized_db: Path):
    """Rows that don't name a table are stored under the default."""
    conn = get_connection(initialized_db)
    insert_rows(conn, [make_row(instance="1"), make_row(instance="2", table="jobs")], "cpu")

    stored = get_rows(conn)
    conn.close()

    assert [r.extra["table"] for r in stored] == ["cpu", "jobs"]


def test_get_rows_filter_by_table(initialized_db: Path):
    """Only rows stored under the named table are returned."""
    conn = get_connection(initialized_db)
    insert_rows(
        conn,
        [
            make_row(instance="1", table="event_stream"),
            make_row(instance="2"),
            make_row(instance="3", service_name="a.service", table="event_stream"),
        ],
    )

    stream = get_rows(conn, table="event_stream")
    both = get_rows(conn, service_name="a.service", table="event_stream")
    conn.close()

    assert [r.instance for r in stream] == ["1", "3"]
    assert [r.instance for r in both] == ["3"]


# --- Prune Tests ---


def test_prune_rejects_zero_days(initialized_db: Path):
    """prune_old_rows raises ValueError when days < 1."""
    conn = get_connection(initialized_db)

    with pytest.raises(ValueError, match="Retention days must be >= 1"):
        prune_old_rows(conn, days=0)

    conn.close()


def test_prune_deletes_old_rows(initialized_db: Path):
    """Rows older than the cutoff are deleted, newer ones kept."""
    now = datetime.now(timezone.utc)
    conn = get_connection(initialized_db)
    insert_rows(
        conn,
        [
            make_row(instance="old", timestamp=now - timedelta(days=45)),
            make_row(instance="recent", timestamp=now - timedelta(days=2)),
        ],
    )

    deleted = prune_old_rows(conn, days=30)
    remaining = get_rows(conn)
    conn.close()

    assert deleted == 1
    assert [r.instance for r in remaining] == ["recent"]


# --- require_database Tests ---


def test_require_database_missing(tmp_path: Path):
    """A missing database raises DatabaseNotAvailable."""
    with pytest.raises(DatabaseNotAvailable):
        with require_database(tmp_path / "missing.db"):
            pass


def test_require_database_yields_connection(initialized_db: Path):
    """An existing database yields a usable connection."""
    with require_database(initialized_db) as conn:
        assert count_rows(conn) == 0
