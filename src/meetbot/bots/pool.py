"""Bounded pool of reusable browser processes.

Sessions borrow a handle with ``acquire()`` and give it back with
``release()``. Handles are reused rather than destroyed on release; idle
handles beyond a warm floor are reaped periodically. The pool lock guards
bookkeeping only: browser launches and the wait for a free handle both
happen outside it.

Conservation holds at every lock release: ``available + in_use == total``
and ``total + launching <= max_instances``.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import structlog

from src.meetbot.bots.errors import JoinError, PoolExhausted
from src.meetbot.core.monitoring import browser_pool_handles

logger = structlog.get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_ACQUIRE_TIMEOUT_SECONDS = 30.0
DEFAULT_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_CLEANUP_INTERVAL_SECONDS = 300.0
WARM_FLOOR = 1


class BrowserLauncher(Protocol):
    """Starts and stops the underlying browser processes."""

    async def launch(self) -> Any: ...

    async def close(self, browser: Any) -> None: ...


class HandleState(str, Enum):
    AVAILABLE = "available"
    IN_USE = "in_use"


@dataclass
class BrowserHandle:
    """A pooled browser process.

    Attributes:
        id: Pool-assigned identifier.
        browser: Opaque browser object returned by the launcher.
        state: Whether the handle is free or borrowed.
        created_at: UTC creation time.
        last_released_at: Monotonic time of the most recent release.
        owner: Meeting id currently holding the handle.
    """

    id: str
    browser: Any
    state: HandleState = HandleState.IN_USE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_released_at: float = field(default_factory=time.monotonic)
    owner: str | None = None


@dataclass
class PoolStats:
    total: int
    available: int
    in_use: int
    launching: int
    max_instances: int


class BrowserPool:
    """Bounded browser pool with polling acquire and idle reaping.

    Args:
        launcher: Creates and closes browser processes.
        max_instances: Upper bound on live plus launching handles.
        acquire_timeout: Seconds ``acquire()`` waits before raising PoolExhausted.
        poll_interval: Seconds between availability checks while waiting.
        cleanup_interval: Seconds between idle-cleanup passes.
        warm_floor: Idle handles kept alive by ``cleanup_idle()``.
    """

    def __init__(
        self,
        launcher: BrowserLauncher,
        max_instances: int = 5,
        acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        warm_floor: int = WARM_FLOOR,
    ) -> None:
        if max_instances < 1:
            msg = "max_instances must be at least 1"
            raise ValueError(msg)
        self._launcher = launcher
        self._max_instances = max_instances
        self._acquire_timeout = acquire_timeout
        self._poll_interval = poll_interval
        self._cleanup_interval = cleanup_interval
        self._warm_floor = warm_floor

        self._lock = asyncio.Lock()
        self._handles: dict[str, BrowserHandle] = {}
        self._launching = 0
        self._closed = False
        self._stop_event = asyncio.Event()
        self._cleanup_task: asyncio.Task | None = None
        self._late_closes: set[asyncio.Future] = set()

    @property
    def max_instances(self) -> int:
        return self._max_instances

    # ── Acquire / Release ────────────────────────────────────────────────

    async def acquire(self, owner: str | None = None) -> BrowserHandle:
        """Borrow a browser handle.

        Prefers an available handle, then launches a new one while under
        ``max_instances``, otherwise polls until one frees up.

        Args:
            owner: Meeting id recorded on the handle for diagnostics.

        Returns:
            A handle in the IN_USE state.

        Raises:
            PoolExhausted: No handle became available within the timeout,
                or the pool has been shut down.
            JoinError: The browser launcher failed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._acquire_timeout

        while True:
            reserved = False
            async with self._lock:
                if self._closed:
                    msg = "browser pool is shut down"
                    raise PoolExhausted(msg)
                handle = self._take_available(owner)
                if handle is not None:
                    self._publish_gauges()
                    logger.debug("pool.handle_reused", handle_id=handle.id, owner=owner)
                    return handle
                if len(self._handles) + self._launching < self._max_instances:
                    self._launching += 1
                    reserved = True

            if reserved:
                return await self._launch_reserved(owner)

            if loop.time() >= deadline:
                logger.warning(
                    "pool.exhausted",
                    owner=owner,
                    timeout_seconds=self._acquire_timeout,
                    max_instances=self._max_instances,
                )
                msg = f"no browser available within {self._acquire_timeout:.0f}s"
                raise PoolExhausted(msg)
            await asyncio.sleep(self._poll_interval)

    def _take_available(self, owner: str | None) -> BrowserHandle | None:
        for handle in self._handles.values():
            if handle.state == HandleState.AVAILABLE:
                handle.state = HandleState.IN_USE
                handle.owner = owner
                return handle
        return None

    async def _launch_reserved(self, owner: str | None) -> BrowserHandle:
        """Launch into a slot reserved by ``acquire()``.

        The reservation is returned on every exit path, including
        cancellation of the caller. A browser that finishes launching after
        the caller went away is closed instead of registered.
        """
        launch = asyncio.ensure_future(self._launcher.launch())
        handle: BrowserHandle | None = None
        try:
            try:
                browser = await asyncio.shield(launch)
            except asyncio.CancelledError:
                launch.add_done_callback(self._discard_late_launch)
                logger.warning("pool.launch_abandoned", owner=owner)
                raise
            except Exception as exc:
                logger.error("pool.launch_failed", owner=owner, exc_info=True)
                msg = f"browser launch failed: {exc}"
                raise JoinError(msg) from exc

            try:
                async with self._lock:
                    if not self._closed:
                        handle = BrowserHandle(id=uuid.uuid4().hex[:12], browser=browser, owner=owner)
                        self._handles[handle.id] = handle
                        self._publish_gauges()
            finally:
                if handle is None:
                    await self._close_browser(browser, handle_id=None)
        finally:
            self._launching -= 1

        if handle is None:
            msg = "browser pool shut down during launch"
            raise PoolExhausted(msg)

        logger.info("pool.browser_created", handle_id=handle.id, owner=owner, total=len(self._handles))
        return handle

    def _discard_late_launch(self, launch: asyncio.Future) -> None:
        if launch.cancelled() or launch.exception() is not None:
            return
        task = asyncio.ensure_future(self._close_browser(launch.result(), handle_id=None))
        self._late_closes.add(task)
        task.add_done_callback(self._late_closes.discard)

    async def release(self, handle: BrowserHandle) -> None:
        """Return a borrowed handle to the pool. Never destroys it.

        Releasing a handle that is unknown or already available is a
        logged no-op.
        """
        async with self._lock:
            current = self._handles.get(handle.id)
            if current is None or current.state != HandleState.IN_USE:
                logger.warning("pool.release_ignored", handle_id=handle.id)
                return
            current.state = HandleState.AVAILABLE
            current.owner = None
            current.last_released_at = time.monotonic()
            self._publish_gauges()
        logger.debug("pool.handle_released", handle_id=handle.id)

    # ── Maintenance ──────────────────────────────────────────────────────

    async def cleanup_idle(self) -> int:
        """Destroy idle handles down to the warm floor, oldest-released first.

        Returns:
            Number of handles destroyed.
        """
        async with self._lock:
            idle = sorted(
                (h for h in self._handles.values() if h.state == HandleState.AVAILABLE),
                key=lambda h: h.last_released_at,
            )
            surplus = idle[: max(0, len(idle) - self._warm_floor)]
            for handle in surplus:
                del self._handles[handle.id]
            self._publish_gauges()

        for handle in surplus:
            await self._close_browser(handle.browser, handle_id=handle.id)
        if surplus:
            logger.info("pool.idle_cleaned", destroyed=len(surplus), remaining=len(self._handles))
        return len(surplus)

    async def shutdown(self) -> None:
        """Destroy every handle regardless of state. Idempotent."""
        await self.stop()
        async with self._lock:
            if self._closed and not self._handles:
                return
            self._closed = True
            handles = list(self._handles.values())
            self._handles.clear()
            self._publish_gauges()

        await asyncio.gather(
            *(self._close_browser(h.browser, handle_id=h.id) for h in handles),
        )
        logger.info("pool.shutdown", destroyed=len(handles))

    async def _close_browser(self, browser: Any, handle_id: str | None) -> None:
        try:
            await self._launcher.close(browser)
        except Exception:
            logger.warning("pool.browser_close_failed", handle_id=handle_id, exc_info=True)

    def stats(self) -> PoolStats:
        in_use = sum(1 for h in self._handles.values() if h.state == HandleState.IN_USE)
        return PoolStats(
            total=len(self._handles),
            available=len(self._handles) - in_use,
            in_use=in_use,
            launching=self._launching,
            max_instances=self._max_instances,
        )

    def _publish_gauges(self) -> None:
        stats = self.stats()
        browser_pool_handles.labels(state="available").set(stats.available)
        browser_pool_handles.labels(state="in_use").set(stats.in_use)

    # ── Background Loop ──────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic idle-cleanup loop."""
        if self._cleanup_task is not None:
            return
        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the periodic idle-cleanup loop."""
        self._stop_event.set()
        if self._cleanup_task is not None:
            task, self._cleanup_task = self._cleanup_task, None
            await task

    async def _cleanup_loop(self) -> None:
        logger.info("pool.cleanup_loop_started", interval_seconds=self._cleanup_interval)
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._cleanup_interval)
            except asyncio.TimeoutError:
                try:
                    await self.cleanup_idle()
                except Exception:
                    logger.error("pool.cleanup_failed", exc_info=True)
        logger.info("pool.cleanup_loop_stopped")
