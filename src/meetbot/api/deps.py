"""FastAPI dependency injection for the worker and shared-secret auth."""

from __future__ import annotations

import secrets

import structlog
from fastapi import Header, HTTPException, Request, status

from src.meetbot.bots.worker import BotWorker
from src.meetbot.config import Environment, get_settings

logger = structlog.get_logger(__name__)


def get_worker(request: Request) -> BotWorker:
    """Get the BotWorker from app.state, or 503 if it failed to start."""
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bot worker not available",
        )
    return worker


async def verify_worker_secret(
    x_api_secret: str | None = Header(default=None, alias="X-API-Secret"),
) -> None:
    """Require the shared worker secret in the X-API-Secret header.

    With no secret configured the check is skipped in development and
    every request is refused elsewhere.

    Raises:
        HTTPException(403): Missing or mismatched secret.
    """
    settings = get_settings()
    expected = settings.WORKER_API_SECRET
    if not expected:
        if settings.ENVIRONMENT == Environment.development:
            return
        logger.error("auth.worker_secret_not_configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    if not x_api_secret or not secrets.compare_digest(x_api_secret, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
