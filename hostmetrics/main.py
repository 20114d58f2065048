"""
HTTP entry point for the host dashboard: app factory, request tracing and health.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hostmetrics import __version__
from hostmetrics.config import Settings, get_settings
from hostmetrics.engine import HostDashboardPipeline, PublishedMetricsStore
from hostmetrics.routers import dashboard
from hostmetrics.store import DocumentStore, SnapshotCache, get_document_store
from hostmetrics.utils.logging import bind_request_context, configure_logging, get_logger

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Settings to use (defaults to get_settings())
        store: Document store to read from (defaults to the configured backend)
        clock: Source of "now" for window resolution (defaults to UTC wall time)
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the store, cache and pipeline once; tear them down on shutdown."""
        document_store = store or get_document_store(settings)
        snapshot_cache = (
            SnapshotCache(settings.snapshot_cache_path) if settings.snapshot_cache_enabled else None
        )
        metrics_store = PublishedMetricsStore()
        pipeline = HostDashboardPipeline(
            document_store,
            metrics_store,
            settings=settings,
            snapshot_cache=snapshot_cache,
            clock=clock,
        )

        app.state.store = document_store
        app.state.metrics_store = metrics_store
        app.state.pipeline = pipeline

        logger.info(
            "application_startup",
            version=app.version,
            store_backend=settings.store_backend,
            snapshot_cache=settings.snapshot_cache_enabled,
            dev_mode=settings.dev_mode,
        )

        yield

        await pipeline.stop()
        if snapshot_cache is not None:
            snapshot_cache.close()
        if store is None:
            document_store.close()
        logger.info("application_shutdown")

    app = FastAPI(
        title="PlanIt Host Analytics API",
        description="Live metrics aggregation for the host dashboard",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        """Tag every log line of a request with its ID and echo it back."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        bind_request_context(request_id, method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("request_failed", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Internal server error", "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )

        response.headers["X-Request-ID"] = request_id
        logger.debug("request_completed", status_code=response.status_code)
        return response

    @app.get("/health", tags=["System"])
    async def health_check(request: Request):
        """Liveness plus the host and timeframe currently being tracked."""
        pipeline: HostDashboardPipeline = request.app.state.pipeline
        context = pipeline.context
        return {
            "status": "healthy",
            "version": app.version,
            "store_backend": settings.store_backend,
            "tracking": context.model_dump(mode="json") if context else None,
        }

    app.include_router(dashboard.router, prefix="/api/v1/dashboard", tags=["Dashboard"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "hostmetrics.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
