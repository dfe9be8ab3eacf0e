"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the PipelineError handler, lifespan events that build the pipeline runtime,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.scriber.config import get_settings
from src.scriber.core.database import close_db, init_db
from src.scriber.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.scriber.core.redis import close_redis, get_redis_pool
from src.scriber.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.scriber.api.v1.router import router as v1_router
from src.scriber.pipeline.errors import PipelineError
from src.scriber.pipeline.runtime import build_runtime

ERROR_STATUS: dict[str, int] = {
    "QUOTA_EXCEEDED": status.HTTP_403_FORBIDDEN,
    "FORBIDDEN": status.HTTP_403_FORBIDDEN,
    "MEETING_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "NO_ACTIVE_JOB": status.HTTP_404_NOT_FOUND,
    "UPLOAD_SESSION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "FILE_MISSING": status.HTTP_409_CONFLICT,
    "DUPLICATE_JOB": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "UPLOAD_INCOMPLETE": status.HTTP_409_CONFLICT,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the pipeline runtime; close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    runtime = build_runtime(settings, get_redis_pool())
    app.state.runtime = runtime
    if settings.RUN_WORKERS_IN_PROCESS:
        runtime.start()
        log.info("app.workers_started_in_process")

    yield

    if settings.RUN_WORKERS_IN_PROCESS:
        await runtime.stop()

    await close_db()
    await close_redis()


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map domain failures to HTTP responses with a stable error code."""
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content={"code": exc.code, "detail": str(exc)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Scriber API",
        version="0.1.0",
        description="Recorded meeting transcription and minutes pipeline",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(PipelineError, pipeline_error_handler)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
