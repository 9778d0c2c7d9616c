# src/unitpulse/aggregator.py
"""Row aggregation from sampling cycles and HTTP ingress.

Both producers feed the same RowBuffer. Batches the buffer hands back are
uploaded in background tasks so a slow sink never stalls the queue
consumer or an HTTP request; the immediate path and forced flushes upload
inline and surface failures to the caller instead.
"""

import asyncio
import uuid
from collections.abc import Sequence
from datetime import datetime

import structlog

from unitpulse.buffer import RowBuffer
from unitpulse.errors import ShuttingDown, UploadError
from unitpulse.formatting import parse_duration
from unitpulse.models import Event, Row, SampleResult, UploadBatch, utcnow
from unitpulse.sinks import Sink
from unitpulse.uploader import upload

log = structlog.get_logger()


def event_rows(
    event: Event, event_id: str | None = None, timestamp: datetime | None = None
) -> list[Row]:
    """One row per data item, all sharing the event's id and arrival time.

    Items that carry their own ``instance`` or ``timestamp`` keep them.
    """
    event_id = event_id or str(uuid.uuid4())
    now = timestamp or utcnow()
    return [Row.from_event(event, item, event_id, timestamp=now) for item in event.data]


class Aggregator:
    """Turns samples and events into rows and gets them uploaded."""

    def __init__(
        self,
        buffer: RowBuffer,
        sinks: Sequence[Sink],
        results: asyncio.Queue,
        hostname: str,
        sink_timeout: float = 5.0,
        default_event_timeout: float = 5.0,
        idle_tick: float = 1.0,
        cluster_id: str = "",
        event_stream_table: str = "event_stream",
    ) -> None:
        self.buffer = buffer
        self.sinks = list(sinks)
        self.results = results
        self.hostname = hostname
        self.sink_timeout = sink_timeout
        self.default_event_timeout = default_event_timeout
        self.idle_tick = idle_tick
        # Event stream records are written only when a cluster id is set
        self.cluster_id = cluster_id
        self.event_stream_table = event_stream_table

        self._accepting = True
        self._uploads: set[asyncio.Task] = set()
        self.rows_received = 0
        self.upload_failures = 0

    @property
    def pending_uploads(self) -> int:
        """Background uploads still in flight."""
        return len(self._uploads)

    # ─────────────────────────────────────────────────────────────────────
    # Background uploads
    # ─────────────────────────────────────────────────────────────────────

    def _schedule(self, batch: UploadBatch) -> None:
        task = asyncio.create_task(self._upload_logged(batch))
        self._uploads.add(task)
        task.add_done_callback(self._uploads.discard)

    async def _upload_logged(self, batch: UploadBatch) -> None:
        try:
            await upload(batch, self.sinks, self.sink_timeout)
        except UploadError as e:
            self.upload_failures += 1
            log.error("background_upload_failed", rows=len(batch), error=str(e))

    async def _append(self, row: Row) -> None:
        self.rows_received += 1
        batch = await self.buffer.append(row)
        if batch is not None:
            log.debug("buffer_flushed", rows=len(batch), trigger="append")
            self._schedule(batch)

    async def _consume(self, result: SampleResult) -> None:
        await self._append(Row.from_sample(result.identity, result.usage, self.hostname))

    # ─────────────────────────────────────────────────────────────────────
    # Sampling loop
    # ─────────────────────────────────────────────────────────────────────

    async def run(self, shutdown: asyncio.Event) -> None:
        """Consume sample results until shutdown is set.

        With no input for ``idle_tick`` seconds the buffer gets a time-only
        flush check, so rows never sit longer than the time threshold plus
        one tick.
        """
        while not shutdown.is_set():
            try:
                result = await asyncio.wait_for(self.results.get(), timeout=self.idle_tick)
            except asyncio.TimeoutError:
                batch = await self.buffer.tick()
                if batch is not None:
                    log.debug("buffer_flushed", rows=len(batch), trigger="tick")
                    self._schedule(batch)
                continue
            await self._consume(result)
        log.info("aggregator_loop_stopped", rows_received=self.rows_received)

    # ─────────────────────────────────────────────────────────────────────
    # Ingress
    # ─────────────────────────────────────────────────────────────────────

    def _check_accepting(self) -> None:
        if not self._accepting:
            raise ShuttingDown("aggregator is shutting down")

    def _rows_for(self, event: Event) -> tuple[list[Row], int]:
        """Data rows for an event, preceded by its stream record if enabled.

        Returns the rows to deliver and how many of them are data rows.
        """
        event_id = str(uuid.uuid4())
        now = utcnow()
        rows = event_rows(event, event_id, now)
        count = len(rows)
        if self.cluster_id:
            stream = Row.for_event_stream(
                event, event_id, self.cluster_id, self.event_stream_table, now
            )
            rows.insert(0, stream)
        return rows, count

    def event_timeout(self, event: Event) -> float:
        """Upload timeout for an immediate event, falling back to the default."""
        if not event.upload_timeout:
            return self.default_event_timeout
        try:
            timeout = parse_duration(event.upload_timeout)
        except ValueError:
            timeout = 0.0
        if timeout <= 0:
            log.warning(
                "upload_timeout_invalid",
                value=event.upload_timeout,
                default=self.default_event_timeout,
            )
            return self.default_event_timeout
        return timeout

    async def submit(self, event: Event) -> int:
        """Buffer an event's rows. Returns the number of data rows appended."""
        self._check_accepting()
        rows, count = self._rows_for(event)
        for row in rows:
            await self._append(row)
        log.debug("event_buffered", table=event.table, rows=count)
        return count

    async def submit_immediately(self, event: Event) -> int:
        """Upload an event's rows now, bypassing the buffer.

        Raises:
            UploadError: If any sink failed; nothing is buffered for retry.
        """
        self._check_accepting()
        rows, count = self._rows_for(event)
        timeout = self.event_timeout(event)
        try:
            await upload(UploadBatch(rows=tuple(rows)), self.sinks, timeout)
        except UploadError:
            self.upload_failures += 1
            raise
        log.info("event_uploaded", table=event.table, rows=count, timeout=timeout)
        return count

    async def handle(self, event: Event) -> tuple[str, int]:
        """Route an event by its ``send_immediately`` flag.

        Returns:
            ``("uploaded", rows)`` or ``("accepted", rows)``.
        """
        if event.send_immediately:
            return "uploaded", await self.submit_immediately(event)
        return "accepted", await self.submit(event)

    # ─────────────────────────────────────────────────────────────────────
    # Flush and shutdown
    # ─────────────────────────────────────────────────────────────────────

    async def flush(self) -> int:
        """Drain the buffer and upload it now. Returns rows uploaded.

        Raises:
            UploadError: If any sink failed.
        """
        batch = await self.buffer.drain()
        if batch is None:
            return 0
        try:
            await upload(batch, self.sinks, self.sink_timeout)
        except UploadError:
            self.upload_failures += 1
            raise
        return len(batch)

    async def stop(self) -> None:
        """Stop accepting input, flush what is left and wait for uploads."""
        self._accepting = False

        drained = 0
        while not self.results.empty():
            await self._consume(self.results.get_nowait())
            drained += 1

        try:
            flushed = await self.flush()
        except UploadError as e:
            flushed = 0
            log.error("final_flush_failed", error=str(e))

        if self._uploads:
            await asyncio.gather(*list(self._uploads), return_exceptions=True)
        log.info("aggregator_stopped", queued_drained=drained, final_rows=flushed)

    def health(self) -> dict:
        """Snapshot for the health endpoint and heartbeat."""
        return {
            "buffered": len(self.buffer),
            "last_flush_age": round(self.buffer.seconds_since_flush(), 3),
            "flushes": self.buffer.flush_count,
            "rows_received": self.rows_received,
            "upload_failures": self.upload_failures,
            "pending_uploads": self.pending_uploads,
            "sinks": [s.sink_id for s in self.sinks],
        }
