"""Admission control and memory-pressure reclamation.

``can_admit()`` reads live counters without taking the registry lock for
longer than a length check; it is advisory and races with concurrent
admissions only by the width of one check. The monitor loop samples the
process RSS on a fixed interval and, above the pressure threshold, runs a
garbage collection pass and then terminates sessions older than the stale
age, oldest first.
"""

from __future__ import annotations

import asyncio
import gc
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import psutil
import structlog

from src.meetbot.bots.schemas import AdmissionDecision, AdmissionReason
from src.meetbot.core.monitoring import admission_decisions_total, worker_memory_bytes

if TYPE_CHECKING:
    from src.meetbot.bots.registry import SessionRegistry
    from src.meetbot.control.plane import ControlPlane

logger = structlog.get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

ADMISSION_MEMORY_RATIO = 0.9
PRESSURE_MEMORY_RATIO = 0.8
CHECK_INTERVAL_SECONDS = 30.0
STALE_SESSION_SECONDS = 30 * 60


def process_rss_bytes() -> int:
    """Resident set size of the current process."""
    return psutil.Process().memory_info().rss


class AdmissionController:
    """Gatekeeper for new sessions and reclaimer under memory pressure.

    Args:
        registry: Live session registry used for the concurrency count and
            for choosing sessions to reclaim.
        max_concurrent_sessions: Ceiling on live sessions.
        memory_limit_bytes: Process memory budget.
        control_plane: Optional sink for the ``worker_memory_usage`` metric.
        check_interval: Seconds between monitor samples.
        stale_session_seconds: Age beyond which a session may be reclaimed.
        terminate_timeout: Seconds to wait for each reclaimed session.
        memory_probe: Returns current RSS in bytes; defaults to psutil.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        max_concurrent_sessions: int = 10,
        memory_limit_bytes: int = 4096 * 1024 * 1024,
        control_plane: ControlPlane | None = None,
        check_interval: float = CHECK_INTERVAL_SECONDS,
        stale_session_seconds: float = STALE_SESSION_SECONDS,
        terminate_timeout: float = 30.0,
        memory_probe: Callable[[], int] = process_rss_bytes,
    ) -> None:
        self._registry = registry
        self._max_concurrent = max_concurrent_sessions
        self._memory_limit = memory_limit_bytes
        self._control_plane = control_plane
        self._check_interval = check_interval
        self._stale_seconds = stale_session_seconds
        self._terminate_timeout = terminate_timeout
        self._memory_probe = memory_probe

        self._last_sample = 0
        self._stop_event = asyncio.Event()
        self._monitor_task: asyncio.Task | None = None

    @property
    def memory_limit_bytes(self) -> int:
        return self._memory_limit

    @property
    def last_memory_sample(self) -> int:
        return self._last_sample

    def current_memory(self) -> int:
        self._last_sample = self._memory_probe()
        return self._last_sample

    # ── Admission ────────────────────────────────────────────────────────

    def evaluate(self) -> AdmissionDecision:
        """Compute the current decision without recording it."""
        if len(self._registry) >= self._max_concurrent:
            return AdmissionDecision(allowed=False, reason=AdmissionReason.CONCURRENCY_LIMIT)
        if self.current_memory() >= self._memory_limit * ADMISSION_MEMORY_RATIO:
            return AdmissionDecision(allowed=False, reason=AdmissionReason.MEMORY_LIMIT)
        return AdmissionDecision(allowed=True, reason=AdmissionReason.OK)

    def can_admit(self) -> AdmissionDecision:
        """Decide whether one more session may start right now."""
        decision = self.evaluate()
        admission_decisions_total.labels(reason=decision.reason.value).inc()
        if not decision.allowed:
            logger.warning(
                "admission.denied",
                reason=decision.reason.value,
                active=len(self._registry),
                max_concurrent=self._max_concurrent,
                memory_bytes=self._last_sample,
            )
        return decision

    # ── Monitoring ───────────────────────────────────────────────────────

    async def record_memory_sample(self) -> int:
        """Sample RSS, publish it, and reclaim if above the pressure threshold.

        Returns:
            The sampled RSS in bytes.
        """
        rss = self.current_memory()
        worker_memory_bytes.set(rss)
        usage_ratio = rss / self._memory_limit if self._memory_limit else 0.0

        if self._control_plane is not None:
            await self._control_plane.record_metric(
                "worker_memory_usage",
                rss,
                {
                    "limit_bytes": self._memory_limit,
                    "usage_percent": round(usage_ratio * 100, 1),
                    "active_sessions": len(self._registry),
                },
            )

        if usage_ratio > PRESSURE_MEMORY_RATIO:
            logger.warning(
                "admission.memory_pressure",
                memory_bytes=rss,
                limit_bytes=self._memory_limit,
                usage_percent=round(usage_ratio * 100, 1),
            )
            await self.reclaim_under_pressure()
        return rss

    async def reclaim_under_pressure(self) -> list[str]:
        """Collect garbage, then terminate stale sessions oldest first.

        Returns:
            Meeting ids of the sessions that were terminated.
        """
        collected = gc.collect()
        logger.info("admission.gc_collected", objects=collected)

        now = datetime.now(timezone.utc)
        stale = sorted(
            (
                s
                for s in self._registry.sessions()
                if (now - s.started_at).total_seconds() > self._stale_seconds and not s.is_finished
            ),
            key=lambda s: s.started_at,
        )

        reclaimed: list[str] = []
        for session in stale:
            logger.warning(
                "admission.reclaiming_session",
                meeting_id=session.meeting_id,
                age_seconds=round((now - session.started_at).total_seconds()),
            )
            await session.terminate("memory_pressure", timeout=self._terminate_timeout)
            reclaimed.append(session.meeting_id)
        return reclaimed

    # ── Background Loop ──────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic memory monitor."""
        if self._monitor_task is not None:
            return
        self._stop_event.clear()
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._monitor_task is not None:
            task, self._monitor_task = self._monitor_task, None
            await task

    async def _monitor_loop(self) -> None:
        logger.info("admission.monitor_started", interval_seconds=self._check_interval)
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
            except asyncio.TimeoutError:
                try:
                    await self.record_memory_sample()
                except Exception:
                    logger.error("admission.monitor_failed", exc_info=True)
        logger.info("admission.monitor_stopped")
