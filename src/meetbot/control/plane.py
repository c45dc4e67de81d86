"""Pub/sub control plane with transparent in-memory degradation.

When Redis is reachable the plane publishes and subscribes on prefixed
channels, caches values with TTLs and appends metrics to a capped list.
When it is not, the plane switches to memory mode: cache operations use
an in-process TTL map, publishes are no-ops and metrics are dropped. Method
signatures are identical in both modes so callers never branch on mode.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from src.meetbot.control.local_cache import LocalTTLCache
from src.meetbot.control.schemas import ControlChannel, ControlMessage
from src.meetbot.core.redis import PrefixedRedis, create_redis_client

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[ControlMessage], Awaitable[None]]

# ── Constants ────────────────────────────────────────────────────────────────

DEFAULT_CACHE_TTL_SECONDS = 3600
METRICS_KEY = "metrics"
METRICS_MAX_ENTRIES = 1000
LISTEN_POLL_SECONDS = 1.0

MODE_REDIS = "redis"
MODE_MEMORY = "memory"


class ControlPlane:
    """Cross-worker messaging, cache and metric sink.

    Args:
        redis_url: Redis connection URL. Empty string starts in memory mode.
        key_prefix: Prefix applied to every key and channel.
        worker_id: Stamped on published messages and metrics.
        connect_timeout: Seconds allowed for the initial PING.
        op_timeout: Seconds allowed for each Redis operation.
        redis_factory: Builds the raw client from (url, connect_timeout).
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "meetbot:",
        worker_id: str = "",
        connect_timeout: float = 5.0,
        op_timeout: float = 3.0,
        redis_factory: Callable[[str, float], Any] = create_redis_client,
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._worker_id = worker_id
        self._connect_timeout = connect_timeout
        self._op_timeout = op_timeout
        self._redis_factory = redis_factory

        self._redis: PrefixedRedis | None = None
        self._mode = MODE_MEMORY
        self._local = LocalTTLCache()
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._pubsub: Any | None = None
        self._listener_task: asyncio.Task | None = None
        self._running = False

    @property
    def mode(self) -> str:
        """Current mode: ``"redis"`` or ``"memory"``."""
        return self._mode

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def connect(self) -> str:
        """Connect to Redis, falling back to memory mode on any failure.

        Returns:
            The resulting mode.
        """
        if not self._redis_url:
            logger.info("control_plane.memory_mode", reason="no_redis_url")
            self._mode = MODE_MEMORY
            return self._mode

        client = None
        try:
            client = PrefixedRedis(
                self._redis_factory(self._redis_url, self._connect_timeout),
                self._key_prefix,
            )
            await asyncio.wait_for(client.ping(), timeout=self._connect_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("control_plane.degraded", error=str(exc))
            if client is not None:
                try:
                    await client.close()
                except (RedisError, OSError):
                    logger.debug("control_plane.close_failed", exc_info=True)
            self._mode = MODE_MEMORY
            return self._mode

        self._redis = client
        self._mode = MODE_REDIS
        logger.info("control_plane.connected", prefix=self._key_prefix)

        if self._handlers:
            await self._start_listener()
        return self._mode

    async def close(self) -> None:
        """Stop the listener and release the Redis connection. Idempotent."""
        self._running = False
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except (RedisError, OSError):
                logger.debug("control_plane.pubsub_close_failed", exc_info=True)
            self._pubsub = None

        if self._redis is not None:
            try:
                await self._redis.close()
            except (RedisError, OSError):
                logger.debug("control_plane.close_failed", exc_info=True)
            self._redis = None

        self._local.clear()
        self._mode = MODE_MEMORY
        logger.info("control_plane.closed")

    # ── Pub/Sub ──────────────────────────────────────────────────────────

    async def publish(self, channel: ControlChannel, message: ControlMessage) -> int:
        """Publish a message. No-op in memory mode.

        Returns:
            Number of subscribers that received it (0 in memory mode or on error).
        """
        if self._redis is None:
            logger.debug("control_plane.publish_skipped", channel=channel.value)
            return 0
        if not message.source_worker:
            message = message.model_copy(update={"source_worker": self._worker_id})
        try:
            return await asyncio.wait_for(
                self._redis.publish(channel.value, message.to_json()),
                timeout=self._op_timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError):
            logger.warning(
                "control_plane.publish_failed",
                channel=channel.value,
                meeting_id=message.meeting_id,
                exc_info=True,
            )
            return 0

    async def subscribe(self, channel: ControlChannel, handler: MessageHandler) -> None:
        """Register an async handler for a channel.

        Handlers registered before ``connect()`` are attached once the
        connection succeeds. In memory mode they are kept but never invoked.
        """
        first_for_channel = channel.value not in self._handlers
        self._handlers.setdefault(channel.value, []).append(handler)
        if self._redis is None:
            return
        if self._pubsub is None:
            await self._start_listener()
        elif first_for_channel:
            await self._pubsub.subscribe(self._redis.key(channel.value))

    async def _start_listener(self) -> None:
        if self._redis is None or not self._handlers:
            return
        try:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(*(self._redis.key(ch) for ch in self._handlers))
        except (RedisError, OSError):
            logger.warning("control_plane.subscribe_failed", exc_info=True)
            self._pubsub = None
            return
        self._running = True
        self._listener_task = asyncio.create_task(self._listen_loop())
        logger.info("control_plane.subscribed", channels=sorted(self._handlers))

    async def _listen_loop(self) -> None:
        while self._running and self._pubsub is not None:
            try:
                raw = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=LISTEN_POLL_SECONDS
                )
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError):
                logger.warning("control_plane.listen_failed", exc_info=True)
                await asyncio.sleep(LISTEN_POLL_SECONDS)
                continue
            if raw is None:
                continue
            await self._dispatch(raw)

    async def _dispatch(self, raw: dict[str, Any]) -> None:
        channel = str(raw.get("channel", ""))
        if self._key_prefix and channel.startswith(self._key_prefix):
            channel = channel[len(self._key_prefix):]
        try:
            message = ControlMessage.from_json(raw.get("data", ""))
        except (ValueError, KeyError, TypeError, ValidationError):
            logger.warning("control_plane.malformed_message", channel=channel)
            return
        for handler in list(self._handlers.get(channel, [])):
            try:
                await handler(message)
            except Exception:
                logger.error(
                    "control_plane.handler_failed",
                    channel=channel,
                    meeting_id=message.meeting_id,
                    exc_info=True,
                )

    # ── Cache ────────────────────────────────────────────────────────────

    async def set_cache(self, key: str, value: Any, ttl: int = DEFAULT_CACHE_TTL_SECONDS) -> None:
        """Store a JSON-serializable value with a TTL in seconds."""
        if self._redis is not None:
            try:
                await asyncio.wait_for(
                    self._redis.set(key, json.dumps(value, default=str), ex=ttl),
                    timeout=self._op_timeout,
                )
                return
            except (RedisError, OSError, asyncio.TimeoutError):
                logger.warning("control_plane.cache_set_failed", key=key, exc_info=True)
        self._local.set(key, value, ttl)

    async def get_cache(self, key: str) -> Any | None:
        """Return a cached value, or None when missing or expired."""
        if self._redis is not None:
            try:
                raw = await asyncio.wait_for(self._redis.get(key), timeout=self._op_timeout)
            except (RedisError, OSError, asyncio.TimeoutError):
                logger.warning("control_plane.cache_get_failed", key=key, exc_info=True)
                return self._local.get(key)
            if raw is None:
                return self._local.get(key)
            try:
                return json.loads(raw)
            except ValueError:
                return raw
        return self._local.get(key)

    # ── Metrics ──────────────────────────────────────────────────────────

    async def record_metric(
        self, metric_type: str, value: float, tags: dict[str, Any] | None = None
    ) -> None:
        """Append a metric sample to the shared list. Dropped in memory mode."""
        if self._redis is None:
            return
        entry = json.dumps(
            {
                "type": metric_type,
                "value": value,
                "tags": tags or {},
                "worker_id": self._worker_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            default=str,
        )
        try:
            await asyncio.wait_for(self._redis.lpush(METRICS_KEY, entry), timeout=self._op_timeout)
            await asyncio.wait_for(
                self._redis.ltrim(METRICS_KEY, 0, METRICS_MAX_ENTRIES - 1),
                timeout=self._op_timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError):
            logger.debug("control_plane.metric_dropped", metric_type=metric_type, exc_info=True)
