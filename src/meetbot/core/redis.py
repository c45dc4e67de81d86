"""Redis client construction and a key-prefixing wrapper.

Every key and channel the worker touches is prefixed with the configured
control-plane prefix (``meetbot:`` by default) so several deployments can
share one Redis without colliding.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub


def create_redis_client(url: str, connect_timeout: float = 5.0) -> aioredis.Redis:
    """Build a Redis client with decoded responses and a connect timeout."""
    return aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=connect_timeout,
    )


# ── Prefixed Redis Wrapper ─────────────────────────────────────────────────


class PrefixedRedis:
    """Redis wrapper that auto-prefixes all keys and channels.

    Args:
        redis_client: Raw async Redis client.
        prefix: String prepended to every key and channel name.
    """

    def __init__(self, redis_client: aioredis.Redis, prefix: str) -> None:
        self._redis = redis_client
        self._prefix = prefix

    def key(self, key: str) -> str:
        """Generate a prefixed key: {prefix}{key}."""
        return f"{self._prefix}{key}"

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    # ── String operations ───────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self.key(key))

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        """Set a value with optional TTL (seconds)."""
        await self._redis.set(self.key(key), value, ex=ex)

    # ── List operations ─────────────────────────────────────────────────

    async def lpush(self, key: str, value: str) -> int:
        return await self._redis.lpush(self.key(key), value)

    async def ltrim(self, key: str, start: int, end: int) -> None:
        await self._redis.ltrim(self.key(key), start, end)

    # ── Pub/Sub ─────────────────────────────────────────────────────────

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message to a prefixed channel."""
        return await self._redis.publish(self.key(channel), message)

    def pubsub(self) -> PubSub:
        """Return a raw PubSub object; callers subscribe with ``key()``."""
        return self._redis.pubsub()

    async def close(self) -> None:
        await self._redis.aclose()
