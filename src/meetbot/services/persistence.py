"""Transcript persistence sinks.

``HttpTranscriptSink`` hands transcripts to the main server, authenticated
with the shared worker secret. ``InMemoryTranscriptSink`` keeps them in
process for development and tests.
"""

from __future__ import annotations

import uuid
from typing import Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.meetbot.bots.errors import PersistenceError
from src.meetbot.bots.schemas import TranscriptRecord

logger = structlog.get_logger(__name__)

SAVE_PATH = "/api/recordings/transcripts/save"

# Connection failures only; a request that reached the server is not resent.
_save_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(httpx.ConnectError),
    reraise=True,
)


class TranscriptSink(Protocol):
    async def save_transcript(self, record: TranscriptRecord) -> str: ...


class HttpTranscriptSink:
    """Posts transcripts to the main server.

    Args:
        base_url: Main server base URL.
        secret: Shared secret sent as ``x-worker-secret``.
        timeout: Seconds allowed per request.
    """

    def __init__(self, base_url: str, secret: str, timeout: float = 30.0) -> None:
        self._url = f"{base_url.rstrip('/')}{SAVE_PATH}"
        self._headers = {"x-worker-secret": secret, "Content-Type": "application/json"}
        self._timeout = timeout

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=timeout)

    @_save_retry
    async def _post(self, payload: dict) -> httpx.Response:
        async with self._client(self._timeout) as client:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()
            return response

    async def save_transcript(self, record: TranscriptRecord) -> str:
        """Store a transcript and return the id assigned by the server.

        Raises:
            PersistenceError: On transport failure, non-2xx status, or a
                response without a transcript id.
        """
        payload = {
            "meetingId": record.meeting_id,
            "userId": record.user_id,
            "fullText": record.full_text,
            "audioDuration": record.audio_duration_seconds,
            "audioSize": record.audio_size_bytes,
            "wordCount": record.word_count,
            "processingTime": record.processing_time_ms,
        }
        try:
            response = await self._post(payload)
        except httpx.HTTPStatusError as exc:
            msg = f"transcript save returned {exc.response.status_code}"
            raise PersistenceError(msg) from exc
        except httpx.HTTPError as exc:
            msg = f"transcript save failed: {exc}"
            raise PersistenceError(msg) from exc

        try:
            data = response.json()
        except ValueError as exc:
            msg = "transcript save returned a non-JSON body"
            raise PersistenceError(msg) from exc

        transcript_id = data.get("transcriptId") or (data.get("transcript") or {}).get("id")
        if not transcript_id:
            msg = "transcript save response has no transcript id"
            raise PersistenceError(msg)
        logger.info("persistence.transcript_saved", meeting_id=record.meeting_id, transcript_id=transcript_id)
        return str(transcript_id)


class InMemoryTranscriptSink:
    """Keeps transcripts in a dict keyed by generated id."""

    def __init__(self) -> None:
        self.transcripts: dict[str, TranscriptRecord] = {}

    async def save_transcript(self, record: TranscriptRecord) -> str:
        transcript_id = str(uuid.uuid4())
        self.transcripts[transcript_id] = record
        logger.info("persistence.transcript_kept_in_memory", meeting_id=record.meeting_id, transcript_id=transcript_id)
        return transcript_id
