"""FastAPI application factory.

Creates the app with logging and metrics middleware, Sentry, a lifespan
that starts and gracefully shuts down the bot worker, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.meetbot.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.meetbot.api.v1.router import router as v1_router
from src.meetbot.bots.errors import ConfigurationError
from src.meetbot.bots.worker import BotWorker
from src.meetbot.config import get_settings
from src.meetbot.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: start the worker on startup, drain it on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT.value,
            worker_id=settings.WORKER_ID,
        )

    # A worker that cannot transcribe must not accept meetings.
    try:
        worker = BotWorker.from_settings(settings)
    except ConfigurationError:
        log.error("worker.configuration_invalid", exc_info=True)
        raise

    try:
        await worker.start()
        app.state.worker = worker
        log.info(
            "worker.ready",
            worker_id=settings.WORKER_ID,
            max_concurrent_bots=settings.MAX_CONCURRENT_BOTS,
            max_browser_instances=settings.MAX_BROWSER_INSTANCES,
        )
    except Exception:
        log.warning("worker.start_failed", exc_info=True)
        app.state.worker = None

    yield

    # ── Shutdown ─────────────────────────────────────────────────────────
    if app.state.worker is not None:
        await app.state.worker.shutdown()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Meeting Bot Worker API",
        version="0.1.0",
        description="Meeting recording bots: join, record, transcribe and persist",
        lifespan=lifespan,
    )
    app.state.worker = None

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
