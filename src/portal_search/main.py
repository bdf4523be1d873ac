"""FastAPI application entry point with lifespan management."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from portal_search.config import settings
from portal_search.errors import IngestionInProgressError
from portal_search.factory import Services, build_services
from portal_search.ingestion.indexers import INDEXERS
from portal_search.models import (
    HealthResponse,
    IndexRequest,
    IndexResponse,
    QueryRequest,
    QueryResponse,
    ReindexResponse,
)
from portal_search.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _failure(status_code: int, error: str, exc: BaseException | None = None) -> JSONResponse:
    content = {"error": error}
    if exc is not None:
        content["message"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health(request: Request, services: Services = Depends(get_services)) -> HealthResponse:
    """Check reachability of the search backend and the cache."""
    started = request.app.state.started_at
    uptime = time.time() - started if started else 0.0

    opensearch_status = "reachable"
    try:
        await services.search.ping()
    except Exception as exc:  # noqa: BLE001
        logger.warning("health.opensearch_unreachable", error=str(exc))
        opensearch_status = "unreachable"

    cache_status = "connected"
    try:
        await services.cache.ping()
    except Exception:  # noqa: BLE001
        cache_status = "unavailable"

    overall = "ok" if opensearch_status == "reachable" and cache_status == "connected" else "degraded"
    return HealthResponse(
        status=overall,
        opensearch=opensearch_status,
        cache=cache_status,
        uptime_seconds=round(uptime, 1),
    )


@router.get("/metrics", summary="Prometheus metrics")
async def metrics(services: Services = Depends(get_services)) -> Response:
    body, content_type = services.observability.render()
    return Response(content=body, media_type=content_type)


@router.post("/admin/ensure-template", summary="Create or update the index template")
async def ensure_template(services: Services = Depends(get_services)) -> JSONResponse:
    try:
        await services.search.ensure_index_template()
    except Exception as exc:  # noqa: BLE001
        services.observability.record_error("ensure-template", exc)
        return _failure(500, "Failed to ensure index template", exc)
    return JSONResponse(content={"ok": True})


@router.post(
    "/admin/reindex/{source}",
    response_model=ReindexResponse,
    summary="Run one ingestion pass for a content source",
)
async def reindex(source: str, services: Services = Depends(get_services)) -> ReindexResponse | JSONResponse:
    if source not in INDEXERS:
        return _failure(404, f"Unknown source '{source}'")
    runner = services.ingestion.get(source)
    if runner is None:
        return _failure(400, f"{source} ingestion not configured")
    if runner.running:
        return _failure(409, f"{source} ingestion already running")

    try:
        await services.search.ensure_index_template()
        report = await runner.run_once()
    except IngestionInProgressError as exc:
        return _failure(409, f"{source} ingestion already running", exc)
    except Exception as exc:  # noqa: BLE001
        services.observability.record_error(f"{source}-reindex", exc)
        return _failure(500, f"{source} reindex failed", exc)
    return ReindexResponse(source=report.source, pages=report.pages, items=report.items)


@router.post("/index", response_model=IndexResponse, summary="Bulk index documents")
async def index(body: IndexRequest, services: Services = Depends(get_services)) -> IndexResponse | JSONResponse:
    try:
        indexed = await services.search.bulk_index(body.source, body.docs)
    except Exception as exc:  # noqa: BLE001
        services.observability.record_error("bulk-index", exc)
        return _failure(500, "Bulk indexing failed", exc)
    return IndexResponse(indexed=indexed)


@router.post("/query", response_model=QueryResponse, response_model_exclude_none=True, summary="Search")
async def query(body: QueryRequest, services: Services = Depends(get_services)) -> QueryResponse | JSONResponse:
    """Run the rewrite, embed, search and re-rank pipeline."""
    if not body.query.strip():
        return _failure(400, "Missing query string")
    try:
        return await services.pipeline.run(
            body.query,
            filters=body.filters,
            page=body.page,
            page_size=body.page_size,
        )
    except Exception as exc:  # noqa: BLE001
        return _failure(500, "Query failed", exc)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(services: Services | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        services: Pre-built service graph; built from :data:`settings` at
                  startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.environment, settings.log_level)
        log = structlog.get_logger(__name__)
        log.info("portal_search.startup", environment=settings.environment, port=settings.port)

        app.state.services = services or build_services(settings)
        await app.state.services.start()
        app.state.started_at = time.time()
        log.info("portal_search.ready")

        yield

        log.info("portal_search.shutdown")
        await app.state.services.stop()

    app = FastAPI(
        title="Portal Search",
        description="Resilient search pipeline: AI query rewrite, hybrid OpenSearch retrieval, re-ranking.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.started_at = 0.0
    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all error handler that logs and returns a structured response."""
        logger.error("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": "Internal server error."})

    return app


app = create_app()


def run() -> None:
    """Serve :data:`app` with uvicorn (blocking)."""
    import uvicorn

    uvicorn.run("portal_search.main:app", host="0.0.0.0", port=settings.port)
