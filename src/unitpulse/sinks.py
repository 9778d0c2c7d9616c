"""Append-only destinations for row batches.

A sink accepts an ordered batch of rows and either stores all of it or
raises. There is no transaction spanning several sinks; the uploader calls
each one in turn.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import httpx
import structlog

from unitpulse.models import DEFAULT_TABLE, Row
from unitpulse.storage import (
    get_connection,
    get_rows,
    init_database,
    insert_rows,
    prune_old_rows,
)

log = structlog.get_logger()


class Sink(Protocol):
    """Storage interface for uploaded batches."""

    sink_id: str
    # Extra fields the destination understands; None accepts any.
    accepted_fields: frozenset[str] | None

    async def put(self, rows: Sequence[Row]) -> None:
        """Store a batch. Raises on any failure."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


def _jsonable(record: dict[str, Any]) -> dict[str, Any]:
    """Render datetimes as ISO-8601 for JSON transport."""
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in record.items()}


class SqliteSink:
    """Rows table in a local SQLite database.

    Every row records its destination table in a ``table_name`` column, so
    rows from different event tables share one file but stay separable.
    """

    accepted_fields: frozenset[str] | None = None

    def __init__(self, db_path: Path, default_table: str = DEFAULT_TABLE) -> None:
        self.db_path = db_path
        self.default_table = default_table
        self.sink_id = f"sqlite:{db_path}"
        self._conn: sqlite3.Connection | None = None
        self._write_lock = asyncio.Lock()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            init_database(self.db_path)
            self._conn = get_connection(self.db_path)
        return self._conn

    async def put(self, rows: Sequence[Row]) -> None:
        """Insert the batch on a worker thread (sqlite calls block)."""
        async with self._write_lock:
            conn = self._connect()
            inserted = await asyncio.to_thread(
                insert_rows, conn, list(rows), self.default_table
            )
        log.debug("sqlite_rows_inserted", rows=inserted, path=str(self.db_path))

    async def read_rows(
        self, limit: int = 100, service_name: str | None = None, table: str | None = None
    ) -> list[Row]:
        """Most recent stored rows, oldest first."""
        async with self._write_lock:
            conn = self._connect()
            return await asyncio.to_thread(get_rows, conn, limit, service_name, table)

    async def prune(self, days: int) -> int:
        """Delete stored rows older than ``days``. Returns rows deleted."""
        async with self._write_lock:
            conn = self._connect()
            return await asyncio.to_thread(prune_old_rows, conn, days)

    async def close(self) -> None:
        """Close the database connection."""
        async with self._write_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class HttpSink:
    """A remote ingress that accepts the same event format this daemon serves.

    Rows are grouped by destination table and each group is posted as one
    event whose ``data`` holds the row records, so one unitpulse instance
    can forward to another. Records keep ``instance``, ``timestamp`` and
    ``hostname``, which the receiving ingress preserves.
    """

    def __init__(
        self,
        url: str,
        table: str,
        node_type: str,
        *,
        timeout: float = 5.0,
        fields: Sequence[str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.table = table  # for rows that don't name one
        self.node_type = node_type
        self.timeout = timeout
        self.sink_id = f"http:{url}"
        self.accepted_fields = frozenset(fields) if fields else None
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def build_event(self, rows: Sequence[Row], table: str | None = None) -> dict[str, Any]:
        """Wrap rows bound for one table in an ingress event body."""
        return {
            "table": table or self.table,
            "node_type": self.node_type,
            "hostname": rows[0].hostname,
            "send_immediately": False,
            "upload_timeout": f"{self.timeout:g}s",
            "data": [_jsonable(r.to_record(self.accepted_fields)) for r in rows],
        }

    def build_events(self, rows: Sequence[Row]) -> list[dict[str, Any]]:
        """One event per destination table, tables in first-seen order."""
        groups: dict[str, list[Row]] = {}
        for row in rows:
            groups.setdefault(row.table_name(self.table), []).append(row)
        return [self.build_event(group, table) for table, group in groups.items()]

    async def put(self, rows: Sequence[Row]) -> None:
        """POST each table's rows; any non-2xx response is a failure."""
        if not rows:
            return
        client = self._get_client()
        for event in self.build_events(rows):
            response = await client.post(self.url, json=event)
            if response.is_error:
                raise RuntimeError(
                    f"POST {self.url} ({event['table']}) returned code "
                    f"{response.status_code}: {response.text[:200]}"
                )

    async def close(self) -> None:
        """Close the HTTP client if this sink created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
