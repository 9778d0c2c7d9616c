"""HTTP ingress for externally submitted events.

Runs inside the daemon's event loop (uvicorn ``Server.serve()``), so handlers
share the aggregator and its buffer lock with the sampling loop.
"""

import contextlib

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from unitpulse.aggregator import Aggregator
from unitpulse.errors import ShuttingDown, UploadError, ValidationFailure
from unitpulse.models import Event

log = structlog.get_logger()

INGRESS_PATHS = ("/events", "/incoming")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def create_app(aggregator: Aggregator) -> FastAPI:
    """Build the ingress app around a running aggregator."""
    app = FastAPI(title="unitpulse ingress", docs_url=None, redoc_url=None)

    async def ingest(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            log.info("event_rejected", reason="malformed json", path=request.url.path)
            return _error(400, "Malformed JSON body")

        try:
            event = Event.parse(payload)
        except ValidationFailure as e:
            log.info("event_rejected", reason=str(e), path=request.url.path)
            return _error(400, str(e))

        try:
            status, rows = await aggregator.handle(event)
        except ValidationFailure as e:
            log.info("event_rejected", reason=str(e), path=request.url.path)
            return _error(400, str(e))
        except UploadError as e:
            log.warning("event_upload_failed", table=event.table, error=str(e))
            return _error(500, f"Upload failed: {e}")
        except ShuttingDown as e:
            return _error(503, str(e))

        return JSONResponse({"status": status, "rows": rows})

    for path in INGRESS_PATHS:
        app.add_api_route(path, ingest, methods=["POST"])

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", **aggregator.health()}

    return app


class IngressServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the daemon."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_server(aggregator: Aggregator, host: str, port: int) -> IngressServer:
    """Create a server ready for ``await server.serve()``."""
    config = uvicorn.Config(
        create_app(aggregator),
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        lifespan="off",
    )
    return IngressServer(config)
