"""Chunked audio capture and artifact assembly.

While recording, encoded slices are drained from the page on a fixed
interval and kept in memory with their arrival sequence and timestamp. On
stop the remaining slices are collected, decoded and concatenated in
arrival order into a single file on disk. A slice that fails to decode is
logged and skipped; the rest are still assembled.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from src.meetbot.bots.errors import RecordingError

if TYPE_CHECKING:
    from src.meetbot.bots.schemas import AudioSource
    from src.meetbot.meeting_client.driver import MeetingClientDriver, RawAudioChunk

logger = structlog.get_logger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class RecordingArtifact:
    """An assembled recording on disk."""

    path: Path
    size_bytes: int
    duration_seconds: float
    chunk_count: int
    skipped_chunks: int
    mime_type: str

    async def read_bytes(self) -> bytes:
        return await asyncio.to_thread(self.path.read_bytes)

    async def delete(self) -> None:
        await asyncio.to_thread(self.path.unlink, missing_ok=True)


class AudioRecorder:
    """Records one session's audio through the meeting driver.

    Args:
        driver: Driver whose page performs the capture.
        meeting_id: Owning meeting; used in the artifact filename.
        recordings_dir: Directory the artifact is written to.
        drain_interval: Seconds between chunk drains while recording.
        call_timeout: Seconds allowed for each driver call.
    """

    def __init__(
        self,
        driver: MeetingClientDriver,
        meeting_id: str,
        recordings_dir: Path,
        drain_interval: float = 1.0,
        call_timeout: float = 15.0,
    ) -> None:
        self._driver = driver
        self._meeting_id = meeting_id
        self._recordings_dir = recordings_dir
        self._drain_interval = drain_interval
        self._call_timeout = call_timeout

        self._chunks: list[RawAudioChunk] = []
        self._source: AudioSource | None = None
        self._mime_type = "audio/webm"
        self._started_monotonic: float | None = None
        self._started_ms: int | None = None
        self._drain_task: asyncio.Task | None = None
        self._artifact: RecordingArtifact | None = None
        self._stopped = False
        self._stop_event = asyncio.Event()

    @property
    def source(self) -> AudioSource | None:
        return self._source

    @property
    def is_recording(self) -> bool:
        return self._started_monotonic is not None and not self._stopped

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def started_at_ms(self) -> int | None:
        return self._started_ms

    async def start(self, source: AudioSource) -> None:
        """Begin capture from ``source``.

        Raises:
            RecordingError: The driver could not start capture.
        """
        try:
            mime_type = await asyncio.wait_for(
                self._driver.start_capture(source), timeout=self._call_timeout
            )
        except Exception as exc:
            msg = f"capture could not start: {exc}"
            raise RecordingError(msg) from exc
        self._source = source
        self._mime_type = mime_type or self._mime_type
        self._started_monotonic = time.monotonic()
        self._started_ms = int(time.time() * 1000)
        self._drain_task = asyncio.create_task(self._drain_loop())
        logger.info(
            "recorder.started",
            meeting_id=self._meeting_id,
            source=source.value,
            mime_type=self._mime_type,
        )

    async def _drain_loop(self) -> None:
        while not self._stopped:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._drain_interval)
            except asyncio.TimeoutError:
                pass
            if self._stopped:
                break
            try:
                chunks = await asyncio.wait_for(self._driver.drain_chunks(), timeout=self._call_timeout)
            except asyncio.TimeoutError:
                # The page may already have handed these slices over.
                logger.error(
                    "recorder.drain_timed_out",
                    meeting_id=self._meeting_id,
                    chunks_kept=len(self._chunks),
                    timeout=self._call_timeout,
                )
                continue
            except Exception:
                logger.warning("recorder.drain_failed", meeting_id=self._meeting_id, exc_info=True)
                continue
            self._chunks.extend(chunks)

    async def _finish_drain(self) -> None:
        """Let an in-flight drain complete, bounded by the driver call timeout."""
        task, self._drain_task = self._drain_task, None
        if task is None:
            return
        self._stop_event.set()
        done, _ = await asyncio.wait({task}, timeout=self._call_timeout)
        if done:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.error(
            "recorder.drain_abandoned",
            meeting_id=self._meeting_id,
            chunks_kept=len(self._chunks),
            timeout=self._call_timeout,
        )

    async def stop(self) -> RecordingArtifact | None:
        """Stop capture and write the artifact. Idempotent.

        A drain already in progress is allowed to finish so the slices it
        took from the page are kept.

        Returns:
            The artifact, or None if recording never started.
        """
        if self._stopped:
            return self._artifact
        self._stopped = True
        await self._finish_drain()

        if self._started_monotonic is None:
            return None

        try:
            final = await asyncio.wait_for(self._driver.stop_capture(), timeout=self._call_timeout)
            self._chunks.extend(final)
        except Exception:
            logger.warning(
                "recorder.final_drain_failed",
                meeting_id=self._meeting_id,
                chunks_kept=len(self._chunks),
                exc_info=True,
            )

        self._artifact = await self._assemble()
        return self._artifact

    async def _assemble(self) -> RecordingArtifact:
        parts: list[bytes] = []
        skipped = 0
        for chunk in sorted(self._chunks, key=lambda c: c.sequence):
            try:
                data = base64.b64decode(chunk.payload, validate=True)
            except (binascii.Error, ValueError, TypeError):
                skipped += 1
                logger.warning(
                    "recorder.chunk_skipped",
                    meeting_id=self._meeting_id,
                    sequence=chunk.sequence,
                )
                continue
            if data:
                parts.append(data)
            else:
                skipped += 1

        audio = b"".join(parts)
        safe_id = _UNSAFE_FILENAME_RE.sub("_", self._meeting_id)
        path = self._recordings_dir / f"recording_{self._started_ms}_{safe_id}.webm"
        await asyncio.to_thread(self._recordings_dir.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, audio)

        duration = time.monotonic() - (self._started_monotonic or time.monotonic())
        logger.info(
            "recorder.artifact_written",
            meeting_id=self._meeting_id,
            path=str(path),
            size_bytes=len(audio),
            chunks=len(parts),
            skipped_chunks=skipped,
            duration_seconds=round(duration, 1),
        )
        return RecordingArtifact(
            path=path,
            size_bytes=len(audio),
            duration_seconds=duration,
            chunk_count=len(parts),
            skipped_chunks=skipped,
            mime_type=self._mime_type,
        )
