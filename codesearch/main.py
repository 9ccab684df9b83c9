"""Code search service main application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from . import __version__
from .api.routes import router as api_router
from .common.config import SearchConfig
from .common.logging import configure_logging
from .common.metrics import MetricsCollector, get_metrics_collector
from .common.tracing import configure_tracing
from .hybrid.search_pipeline import SearchPipeline, create_search_pipeline

logger = structlog.get_logger("search_service")

SERVICE_NAME = "code-search"


def create_app(
    config: Optional[SearchConfig] = None,
    pipeline: Optional[SearchPipeline] = None,
    metrics_collector: Optional[MetricsCollector] = None
) -> FastAPI:
    """Build the FastAPI application.

    A pre-built ``pipeline`` (and collector) is used as-is and never
    initialized or cleaned up by the app; otherwise the lifespan wires one
    from ``config``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = app.state.config
        configure_logging(SERVICE_NAME, settings.cs_log_level, settings.cs_log_format)

        if settings.cs_tracing_enabled:
            tracer = configure_tracing(settings.cs_otel_service_name, settings.cs_otel_exporter)
            if tracer:
                logger.info("OpenTelemetry tracing enabled", exporter=settings.cs_otel_exporter)
            else:
                logger.warning("Tracing initialization failed")
        else:
            tracer = None
            logger.info("OpenTelemetry tracing disabled via configuration")
        app.state.tracer = tracer

        logger.info("Starting code search service")

        owns_pipeline = getattr(app.state, "search_pipeline", None) is None
        if getattr(app.state, "metrics_collector", None) is None:
            app.state.metrics_collector = get_metrics_collector(SERVICE_NAME)
        if owns_pipeline:
            app.state.search_pipeline = create_search_pipeline(settings, app.state.metrics_collector)
            await app.state.search_pipeline.initialize()

        logger.info("Code search service started successfully")

        yield

        logger.info("Shutting down code search service")
        if owns_pipeline:
            await app.state.search_pipeline.cleanup()
        logger.info("Code search service shutdown complete")

    app = FastAPI(
        title="Code Search Service",
        description="Hybrid dense and keyword code search with reranking and context assembly",
        version=__version__,
        lifespan=lifespan
    )
    app.state.config = config or SearchConfig()
    app.state.search_pipeline = pipeline
    app.state.metrics_collector = metrics_collector

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        response.headers["X-Process-Time"] = str(duration)
        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is not None:
            collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=response.status_code,
                duration=duration
            )
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        pipeline = getattr(request.app.state, "search_pipeline", None)
        try:
            healthy = pipeline is not None and await pipeline.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e)}
            )

        if healthy:
            return {"status": "healthy", "service": SERVICE_NAME}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": SERVICE_NAME}
        )

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is None:
            return Response(content="# No metrics available\n", media_type="text/plain")
        return Response(content=collector.get_metrics(), media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "search": "/api/v1/search",
                "references": "/api/v1/search/references",
                "similar": "/api/v1/chunks/{chunk_id}/similar",
                "context": "/api/v1/chunks/{chunk_id}/context",
                "stats": "/api/v1/stats"
            }
        }

    return app


def run() -> None:
    """Console entry point."""
    config = SearchConfig()
    uvicorn.run(
        "codesearch.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=config.search_port,
        log_level=config.cs_log_level.lower()
    )


if __name__ == "__main__":
    run()
