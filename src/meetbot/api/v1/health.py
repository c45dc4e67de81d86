"""Health check endpoints.

Provides liveness (/health) and a detailed view (/health/detailed) with
pool occupancy, memory, admission state and control-plane mode. The
detailed check returns 503 while the worker is not accepting sessions.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.meetbot.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Basic liveness check.

    No dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    worker = getattr(request.app.state, "worker", None)
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "worker_id": settings.WORKER_ID,
        "active_bots": len(worker.registry) if worker is not None else 0,
    }


@router.get("/health/detailed")
async def detailed_health_check(request: Request):
    """Pool, memory, admission and control-plane state.

    Returns 200 while the worker accepts sessions, 503 otherwise.
    """
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unavailable", "detail": "Bot worker not available"},
        )

    snapshot = worker.health_snapshot()
    limit = snapshot.memory_limit_bytes
    content = {
        "status": "healthy" if snapshot.accepting else "draining",
        "uptime_seconds": round(worker.uptime_seconds(), 1),
        "bots": {"active": snapshot.active_count},
        "browser_pool": {
            "total": snapshot.pool_total,
            "available": snapshot.pool_available,
            "in_use": snapshot.pool_in_use,
            "max": worker.pool.max_instances,
        },
        "memory": {
            "rss_bytes": snapshot.memory_usage_bytes,
            "limit_bytes": limit,
            "usage_percent": round(snapshot.memory_usage_bytes / limit * 100, 1) if limit else 0.0,
        },
        "admission": {
            "can_create_bot": snapshot.admission.allowed,
            "reason": snapshot.admission.reason.value,
        },
        "control_plane": {"mode": snapshot.control_plane_mode},
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if snapshot.accepting else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=content,
    )
