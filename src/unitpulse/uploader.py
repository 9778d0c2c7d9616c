"""Batch delivery to every configured sink."""

import asyncio
import time
from collections.abc import Sequence

import structlog

from unitpulse.errors import SinkFailure, UploadError
from unitpulse.models import UploadBatch
from unitpulse.sinks import Sink

log = structlog.get_logger()


async def _put_one(sink: Sink, batch: UploadBatch, timeout: float) -> SinkFailure | None:
    """Attempt one sink, converting any failure into a SinkFailure."""
    log.debug("sink_upload_starting", sink=sink.sink_id, rows=len(batch))
    try:
        await asyncio.wait_for(sink.put(batch.rows), timeout=timeout)
    except asyncio.TimeoutError:
        return SinkFailure(sink.sink_id, f"timed out after {timeout:g}s")
    except asyncio.CancelledError:
        raise
    except Exception as e:
        return SinkFailure(sink.sink_id, str(e) or type(e).__name__)
    return None


async def upload(batch: UploadBatch, sinks: Sequence[Sink], timeout: float) -> None:
    """Push a batch to every sink, each under its own timeout.

    A failing sink never stops the remaining ones from being attempted. Rows
    are not retried or re-buffered.

    Raises:
        UploadError: If at least one sink failed; lists only the failed sinks.
    """
    if not batch.rows:
        return

    start = time.monotonic()
    failures: list[SinkFailure] = []
    for sink in sinks:
        failure = await _put_one(sink, batch, timeout)
        if failure is not None:
            log.warning("sink_upload_failed", sink=failure.sink_id, error=failure.message)
            failures.append(failure)

    elapsed = time.monotonic() - start
    if failures:
        log.error(
            "upload_failed",
            rows=len(batch),
            sinks=len(sinks),
            failed=len(failures),
            elapsed_ms=round(elapsed * 1000, 1),
        )
        raise UploadError(failures)

    log.info(
        "batch_uploaded",
        rows=len(batch),
        sinks=len(sinks),
        elapsed_ms=round(elapsed * 1000, 1),
    )
