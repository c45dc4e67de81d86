"""Prometheus metrics, Sentry integration, and transcription call tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Worker gauges/counters for sessions, the browser pool, admission and memory
- track_transcription(): Context manager for transcription call metrics
- init_sentry(): Initialize Sentry with worker-tagged before_send callback
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Session Metrics ──────────────────────────────────────────────────────────

bot_sessions_active = Gauge(
    "bot_sessions_active",
    "Number of live bot sessions in the registry",
)

bot_session_transitions_total = Counter(
    "bot_session_transitions_total",
    "Bot session state transitions",
    ["state"],
)

audio_sources_acquired_total = Counter(
    "audio_sources_acquired_total",
    "Audio sources selected by the acquisition loop",
    ["source"],
)

# ── Resource Metrics ─────────────────────────────────────────────────────────

browser_pool_handles = Gauge(
    "browser_pool_handles",
    "Browser handles in the pool by state",
    ["state"],
)

admission_decisions_total = Counter(
    "admission_decisions_total",
    "Admission decisions by reason",
    ["reason"],
)

worker_memory_bytes = Gauge(
    "worker_memory_bytes",
    "Resident set size of the worker process",
)

# ── Transcription Metrics ────────────────────────────────────────────────────

transcription_requests_total = Counter(
    "transcription_requests_total",
    "Total transcription API requests",
    ["model", "status"],
)

transcription_duration_seconds = Histogram(
    "transcription_duration_seconds",
    "Transcription API request duration in seconds",
    ["model"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route path pattern (set by the router) keeps label cardinality low
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Transcription Metrics Helper ─────────────────────────────────────────────


@asynccontextmanager
async def track_transcription(model: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks transcription call metrics.

    Usage:
        async with track_transcription("whisper-1") as tracker:
            result = await post_audio(...)
            tracker["audio_bytes"] = len(audio)

    Records duration in a histogram and a success/error request count.
    """
    tracker: dict[str, Any] = {"audio_bytes": 0}
    start_time = time.perf_counter()
    status = "success"

    try:
        yield tracker
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        transcription_requests_total.labels(model=model, status=status).inc()
        transcription_duration_seconds.labels(model=model).observe(duration)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str, worker_id: str = "") -> None:
    """Initialize Sentry SDK with worker-tagged events.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
        worker_id: Worker identity added as a tag on every event.
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Add worker context to Sentry events."""
        if worker_id:
            event.setdefault("tags", {})["worker_id"] = worker_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
