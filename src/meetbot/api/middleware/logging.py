"""Structured request logging middleware.

Each request produces one access line carrying method, path, status_code,
duration_ms, worker_id, request_id (echoed back as X-Request-ID) and, for
bot routes, the meeting_id path parameter so access lines line up with the
session's own log events.

Uses structlog for structured JSON logging in production and
human-readable console output in development.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.meetbot.config import Environment, get_settings

logger = structlog.get_logger(__name__)


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _access_fields(request: Request, request_id: str, started: float) -> dict[str, Any]:
    # Routing fills path_params on the shared scope once the route matched.
    meeting_id = request.scope.get("path_params", {}).get("meeting_id")
    fields: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "duration_ms": round((time.monotonic() - started) * 1000, 2),
        "worker_id": get_settings().WORKER_ID,
        "request_id": request_id,
    }
    if meeting_id:
        fields["meeting_id"] = meeting_id
    return fields


class LoggingMiddleware(BaseHTTPMiddleware):
    """One access log line per request, tagged with the meeting it touched."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = time.monotonic()

        try:
            response = await call_next(request)
        except Exception:
            logger.error("request_error", status_code=500, **_access_fields(request, request_id, started))
            raise

        response.headers["X-Request-ID"] = request_id
        if response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        else:
            log_method = logger.info
        log_method(
            "request_completed",
            status_code=response.status_code,
            **_access_fields(request, request_id, started),
        )
        return response
