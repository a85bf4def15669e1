"""
Market Snapshot API - read access to stored snapshots and on-demand collection

Every endpoint except /health and /metrics answers with the envelope

    {"success": bool, "data": ..., "error": str | null}

Big integers are rendered as exact JSON integers.
"""

import re
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Path, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from market_snapshot_service.codec import int_to_digits
from market_snapshot_service.collector import SnapshotCollector
from market_snapshot_service.errors import (
    EmptyFetchError,
    SnapshotServiceError,
    SourceUnavailableError,
    StorageError,
)
from market_snapshot_service.models import CollectionMode
from market_snapshot_service.query import SnapshotQueryService
from market_snapshot_service.scheduler import CollectionScheduler
from market_snapshot_service.sources.base import MarketDataSource

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 1000

# Wider integers exceed the str() digit limit and go through int_to_digits
WIDE_INT_BITS = 3000


class SnapshotJSONResponse(JSONResponse):
    """JSONResponse that renders integers of any size as exact JSON numbers"""

    def render(self, content: Any) -> bytes:
        token = uuid.uuid4().hex
        wide: Dict[str, str] = {}

        def swap(value: Any) -> Any:
            if isinstance(value, dict):
                return {key: swap(item) for key, item in value.items()}
            if isinstance(value, (list, tuple)):
                return [swap(item) for item in value]
            if isinstance(value, int) and not isinstance(value, bool) and value.bit_length() > WIDE_INT_BITS:
                marker = f"{token}:{len(wide)}"
                wide[marker] = int_to_digits(value)
                return marker
            return value

        rendered = super().render(swap(content))
        if not wide:
            return rendered
        pattern = re.compile(f'"({token}:[0-9]+)"')
        return pattern.sub(lambda match: wide[match.group(1)], rendered.decode("utf-8")).encode("utf-8")


def envelope(data: Any = None, error: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    return SnapshotJSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": error is None, "data": data, "error": error}),
    )


def error_status(error: Exception) -> int:
    """HTTP status for a failed call"""
    if isinstance(error, (EmptyFetchError, SourceUnavailableError)):
        return 502
    if isinstance(error, StorageError):
        return 503
    return 500


def create_app(
    query: SnapshotQueryService,
    collector: SnapshotCollector,
    source: MarketDataSource,
    scheduler: Optional[CollectionScheduler] = None,
    service_name: str = "market_snapshot_service",
) -> FastAPI:
    """Build the FastAPI application around already-initialised components."""
    app = FastAPI(
        title="Market Snapshot API",
        description="Latest, historical and grouped market snapshots",
        version="1.0.0",
        default_response_class=SnapshotJSONResponse,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    default_collection = collector.collection

    @app.exception_handler(SnapshotServiceError)
    async def service_error_handler(request: Request, exc: SnapshotServiceError):
        status_code = error_status(exc)
        logger.error(
            "Request failed",
            path=request.url.path,
            status=status_code,
            error=str(exc),
            error_type=type(exc).__name__
        )
        return envelope(error=str(exc), status_code=status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled error",
            path=request.url.path,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True
        )
        return envelope(error=str(exc) or type(exc).__name__, status_code=500)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
        )
        return envelope(error=messages or "Invalid request", status_code=422)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": service_name,
            "source": source.describe(),
            "collection": default_collection,
            "scheduler": scheduler.get_status() if scheduler else None,
            "last_run": collector.last_run.summary() if collector.last_run else None,
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/snapshots/latest")
    async def latest_snapshots(
        source_tag: Optional[str] = Query(None, alias="source"),
        collection: Optional[str] = None,
    ):
        documents = await query.latest(collection or default_collection, source_tag)
        return envelope(documents)

    @app.get("/snapshots/grouped")
    async def grouped_snapshots(collection: Optional[str] = None):
        return envelope(await query.latest_grouped(collection or default_collection))

    @app.get("/snapshots/{key}")
    async def latest_snapshot(
        key: str = Path(..., description="Entity key, e.g. SOL-PERP"),
        source_tag: Optional[str] = Query(None, alias="source"),
        collection: Optional[str] = None,
    ):
        document = await query.latest_for(collection or default_collection, key, source_tag)
        if document is None:
            return envelope(error=f"No snapshot found for {key}", status_code=404)
        return envelope(document)

    @app.get("/snapshots/{key}/history")
    async def snapshot_history(
        key: str,
        limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
        source_tag: Optional[str] = Query(None, alias="source"),
        collection: Optional[str] = None,
    ):
        documents = await query.history(collection or default_collection, key, limit, source_tag)
        return envelope(documents)

    @app.get("/snapshots/{key}/funding")
    async def funding_rate_history(
        key: str,
        limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
        source_tag: Optional[str] = Query(None, alias="source"),
        collection: Optional[str] = None,
    ):
        documents = await query.funding_rate_history(collection or default_collection, key, limit, source_tag)
        return envelope(documents)

    @app.get("/snapshots/{key}/twap")
    async def twap_price_history(
        key: str,
        limit: int = Query(DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
        source_tag: Optional[str] = Query(None, alias="source"),
        collection: Optional[str] = None,
    ):
        documents = await query.twap_price_history(collection or default_collection, key, limit, source_tag)
        return envelope(documents)

    @app.post("/collect")
    async def collect(mode: CollectionMode = Query(CollectionMode.UPSERT)):
        """Run one collection cycle and return its summary"""
        if scheduler is not None:
            run = await scheduler.trigger(mode=mode)
            if run is None:
                return envelope(error="A collection run is already in progress", status_code=409)
        else:
            run = await collector.run_once(source, mode)

        data = run.summary()
        data["outcomes"] = [outcome.model_dump() for outcome in run.outcomes]
        return envelope(data)

    return app
