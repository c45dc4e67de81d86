"""In-process TTL cache used when Redis is unreachable."""

from __future__ import annotations

import asyncio
import time
from typing import Any


class LocalTTLCache:
    """Dict-backed cache whose entries expire after a TTL.

    Expiry is scheduled on the running event loop with ``call_later``;
    reads also check the deadline so entries never outlive their TTL
    even when no loop was running at write time.
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[Any, float]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._cancel_timer(key)
        self._entries[key] = (value, time.monotonic() + ttl)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timers[key] = loop.call_later(ttl, self._expire, key)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if time.monotonic() >= deadline:
            self._expire(key)
            return None
        return value

    def delete(self, key: str) -> None:
        self._cancel_timer(key)
        self._entries.pop(key, None)

    def clear(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _expire(self, key: str) -> None:
        self._timers.pop(key, None)
        self._entries.pop(key, None)

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
