"""Speech-to-text via the OpenAI audio transcription endpoint.

One multipart POST per recording with an explicit timeout. There is no
retry: a session makes at most one transcription attempt, and a failure
becomes the session's ``transcription_failed`` outcome.
"""

from __future__ import annotations

from typing import Protocol

import httpx
import structlog

from src.meetbot.bots.errors import ConfigurationError, TranscriptionError
from src.meetbot.bots.schemas import TranscriptionResult
from src.meetbot.core.monitoring import track_transcription

logger = structlog.get_logger(__name__)

OPENAI_TRANSCRIPTIONS_URL = "https://api.openai.com/v1/audio/transcriptions"


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> TranscriptionResult: ...


class WhisperTranscriber:
    """Async client for the OpenAI transcription API.

    Args:
        api_key: OpenAI API key.
        model: Transcription model name.
        language: ISO-639-1 hint for the spoken language.
        timeout: Seconds allowed for the whole request.
        url: Endpoint override.

    Raises:
        ConfigurationError: If ``api_key`` is empty.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        language: str = "en",
        timeout: float = 300.0,
        url: str = OPENAI_TRANSCRIPTIONS_URL,
    ) -> None:
        if not api_key:
            msg = "OPENAI_API_KEY is required for transcription"
            raise ConfigurationError(msg)
        self._model = model
        self._language = language
        self._timeout = timeout
        self._url = url
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(headers=self._headers, timeout=timeout)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> TranscriptionResult:
        """Transcribe one recording.

        Args:
            audio: Encoded audio bytes.
            mime_type: Container/codec of ``audio``.

        Returns:
            Transcript text and the audio duration reported by the API.

        Raises:
            TranscriptionError: On transport failure, non-2xx status, or an
                unparseable response body.
        """
        extension = "webm" if "webm" in mime_type else "ogg"
        async with track_transcription(self._model) as tracker:
            tracker["audio_bytes"] = len(audio)
            try:
                async with self._client(self._timeout) as client:
                    response = await client.post(
                        self._url,
                        files={"file": (f"recording.{extension}", audio, mime_type.split(";")[0])},
                        data={
                            "model": self._model,
                            "language": self._language,
                            "response_format": "verbose_json",
                        },
                    )
                    response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                msg = f"transcription API returned {exc.response.status_code}"
                raise TranscriptionError(msg) from exc
            except httpx.HTTPError as exc:
                msg = f"transcription request failed: {exc}"
                raise TranscriptionError(msg) from exc

            try:
                data = response.json()
            except ValueError as exc:
                msg = "transcription API returned a non-JSON body"
                raise TranscriptionError(msg) from exc

        text = str(data.get("text") or "").strip()
        duration = float(data.get("duration") or 0.0)
        logger.info(
            "transcription.completed",
            model=self._model,
            audio_bytes=len(audio),
            chars=len(text),
            duration_seconds=duration,
        )
        return TranscriptionResult(text=text, duration_seconds=duration)
