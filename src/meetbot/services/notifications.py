"""Fire-and-forget lifecycle webhooks.

Payload shape: ``{event, data, timestamp, worker_id}``. Delivery failures
are logged and swallowed; callers never see an exception.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = structlog.get_logger(__name__)

# ── Lifecycle Events ─────────────────────────────────────────────────────────

MEETING_JOINED = "meeting.joined"
MEETING_ENDED = "meeting.ended"
BOT_CLEANUP = "bot.cleanup"

_webhook_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class Notifier(Protocol):
    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class WebhookNotifier:
    """Posts lifecycle events to a webhook URL.

    Args:
        url: Destination URL. Empty disables delivery.
        worker_id: Included in every payload.
        timeout: Seconds allowed per attempt.
    """

    def __init__(self, url: str, worker_id: str, timeout: float = 10.0) -> None:
        self._url = url
        self._worker_id = worker_id
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    @_webhook_retry
    async def _post(self, body: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(self._url, json=body)
            response.raise_for_status()

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        if not self._url:
            return
        body = {
            "event": event,
            "data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "worker_id": self._worker_id,
        }
        try:
            await self._post(body)
        except httpx.HTTPError:
            logger.warning("notifier.delivery_failed", notify_event=event, exc_info=True)
            return
        logger.debug("notifier.delivered", notify_event=event)
