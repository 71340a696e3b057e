"""FastAPI application entry-point for the StoryPress fulfillment backend."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from storypress_core.retry import RetryConfig

from storypress_api import __version__
from storypress_api.config import PlatformEnv
from storypress_api.dependencies import (
    build_fulfillment_orchestrator,
    dispose_clients,
    dispose_engine,
    get_session_factory,
    get_settings,
    init_clients,
    init_engine,
)
from storypress_api.middleware.logging import RequestLoggingMiddleware
from storypress_api.routers import admin, credits, health, webhooks
from storypress_api.services.job_queue import JobName, JobRunner

logger = logging.getLogger(__name__)


def configure_logging(structured: bool) -> None:
    """Install the JSON formatter on the root logger when *structured*."""
    if not structured:
        return
    from storypress_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
    logger.info("Structured JSON logging enabled")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses
      migrations).
    - Build the vendor, email, storage and rendering clients.
    - Start the background job runner.

    On shutdown the runner is stopped before the clients and the engine
    are disposed.
    """
    settings = get_settings()
    configure_logging(settings.structured_logging)

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        from storypress_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    init_clients(settings)
    logger.info("External clients initialised (storage=%s)", settings.storage_backend.value)

    runner: JobRunner | None = None
    if settings.job_runner_enabled:
        session_factory = get_session_factory()
        orchestrator = build_fulfillment_orchestrator(session_factory)

        async def _handle_order_paid(payload: dict[str, Any]) -> None:
            await orchestrator.process_paid_order(str(payload["order_id"]))

        runner = JobRunner(
            session_factory,
            {JobName.ORDER_PAID: _handle_order_paid},
            retry_config=RetryConfig(
                max_attempts=settings.job_max_attempts,
                base_delay=settings.job_retry_base_delay,
            ),
            poll_interval=settings.job_poll_interval_seconds,
            visibility_timeout=settings.job_visibility_timeout_seconds,
        )
        await runner.start()

    yield

    if runner is not None:
        await runner.stop()
    await dispose_clients()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="StoryPress API",
        description="Payments, book assembly, print fulfillment and credits for personalized books.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-Token", "X-Request-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(credits.router, prefix="/api/v1")

    # Readiness probe at the root, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc) or "Invalid request"})

    @app.exception_handler(LookupError)
    async def lookup_error_handler(request: Request, exc: LookupError) -> JSONResponse:
        logger.info("LookupError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc) or "Not found"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn storypress_api.main:app``.
app = create_app()
