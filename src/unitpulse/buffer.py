# src/unitpulse/buffer.py
"""Row buffer with size- and time-triggered flushing.

Every mutation (appends from the aggregator loop, appends from HTTP
submissions, idle ticks and forced drains) goes through one asyncio.Lock, so
the check-then-flush after an append is atomic with respect to concurrent
submitters. A flush hands back an immutable snapshot and leaves the buffer
empty; uploading that snapshot is the caller's job and happens outside the
lock.
"""

import asyncio
import time
from typing import Callable

from unitpulse.errors import ConfigurationError
from unitpulse.models import FlushState, Row, UploadBatch


class RowBuffer:
    """Ordered, append-only rows awaiting upload."""

    def __init__(
        self,
        size_threshold: int,
        time_threshold: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if size_threshold < 1:
            raise ConfigurationError(f"size_threshold must be >= 1, got {size_threshold}")
        if time_threshold <= 0:
            raise ConfigurationError(f"time_threshold must be > 0, got {time_threshold}")
        self.size_threshold = size_threshold
        self.time_threshold = time_threshold
        self._clock = clock
        self._rows: list[Row] = []
        self._state = FlushState(last_flush_time=clock())
        self._lock = asyncio.Lock()
        self.flush_count = 0

    def __len__(self) -> int:
        """Return number of buffered rows."""
        return len(self._rows)

    @property
    def is_empty(self) -> bool:
        """Return True if no rows are buffered."""
        return not self._rows

    @property
    def rows(self) -> list[Row]:
        """Read-only access to buffered rows (returns a copy)."""
        return list(self._rows)

    @property
    def last_flush_time(self) -> float:
        """Clock reading at the last flush (or at construction)."""
        return self._state.last_flush_time

    def seconds_since_flush(self) -> float:
        """Elapsed clock time since the last flush."""
        return self._clock() - self._state.last_flush_time

    def should_flush(self, now: float) -> bool:
        """Either threshold alone is enough."""
        return (
            len(self._rows) >= self.size_threshold
            or now - self._state.last_flush_time >= self.time_threshold
        )

    def _take(self, now: float) -> UploadBatch:
        batch = UploadBatch(rows=tuple(self._rows), created_at=now)
        self._rows = []
        self._state.last_flush_time = now
        self.flush_count += 1
        return batch

    async def append(self, row: Row) -> UploadBatch | None:
        """Append a row; return a snapshot if this append triggered a flush."""
        async with self._lock:
            self._rows.append(row)
            now = self._clock()
            if self.should_flush(now):
                return self._take(now)
            return None

    async def tick(self) -> UploadBatch | None:
        """Time-only flush check for idle periods.

        An empty buffer is left alone and its flush time is not reset, so
        the next row after a long quiet spell flushes immediately.
        """
        async with self._lock:
            if not self._rows:
                return None
            now = self._clock()
            if now - self._state.last_flush_time >= self.time_threshold:
                return self._take(now)
            return None

    async def drain(self) -> UploadBatch | None:
        """Flush whatever is buffered regardless of thresholds."""
        async with self._lock:
            if not self._rows:
                return None
            return self._take(self._clock())
