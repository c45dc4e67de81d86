"""Audio source acquisition with bounded retry and synthetic fallback.

Each attempt runs the capability probes in priority order and takes the
first that reports a live stream. Attempts repeat on a fixed interval up to
a maximum; the stop signal is checked before every attempt and the wait
between attempts returns as soon as it is set. When every attempt fails a
near-silent synthetic stream is created so recording can still proceed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from src.meetbot.bots.errors import RecordingError
from src.meetbot.bots.schemas import AudioSource
from src.meetbot.core.monitoring import audio_sources_acquired_total

if TYPE_CHECKING:
    from src.meetbot.meeting_client.driver import MeetingClientDriver

logger = structlog.get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

AUDIO_PROBE_ORDER: tuple[AudioSource, ...] = (
    AudioSource.VIDEO,
    AudioSource.AUDIO,
    AudioSource.GLOBAL_HANDLE,
    AudioSource.SCREEN_CAPTURE,
)
MAX_ATTEMPTS = 20
RETRY_INTERVAL_SECONDS = 3.0


async def _probe(
    driver: MeetingClientDriver, source: AudioSource, timeout: float, meeting_id: str
) -> bool:
    try:
        return bool(await asyncio.wait_for(driver.probe_audio_source(source), timeout=timeout))
    except asyncio.TimeoutError:
        logger.debug("audio.probe_timeout", meeting_id=meeting_id, source=source.value)
    except Exception:
        logger.debug("audio.probe_error", meeting_id=meeting_id, source=source.value, exc_info=True)
    return False


async def acquire_audio_source(
    driver: MeetingClientDriver,
    stop_event: asyncio.Event,
    *,
    max_attempts: int = MAX_ATTEMPTS,
    retry_interval: float = RETRY_INTERVAL_SECONDS,
    probe_timeout: float = 15.0,
    meeting_id: str = "",
) -> AudioSource | None:
    """Find an audio stream to record.

    Args:
        driver: Meeting client driver for the session's page.
        stop_event: Session stop signal; observed before each attempt and
            during the wait between attempts.
        max_attempts: Probe rounds before falling back to a synthetic stream.
        retry_interval: Seconds between probe rounds.
        probe_timeout: Seconds allowed for each driver call.
        meeting_id: Used for log context only.

    Returns:
        The selected source, or None if a stop was requested first.

    Raises:
        RecordingError: The synthetic fallback could not be created.
    """
    for attempt in range(1, max_attempts + 1):
        if stop_event.is_set():
            logger.info("audio.acquisition_stopped", meeting_id=meeting_id, attempt=attempt)
            return None

        for source in AUDIO_PROBE_ORDER:
            if await _probe(driver, source, probe_timeout, meeting_id):
                logger.info(
                    "audio.source_acquired",
                    meeting_id=meeting_id,
                    source=source.value,
                    attempt=attempt,
                )
                audio_sources_acquired_total.labels(source=source.value).inc()
                return source

        logger.debug("audio.no_source_yet", meeting_id=meeting_id, attempt=attempt)
        if attempt < max_attempts:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=retry_interval)
            except asyncio.TimeoutError:
                continue
            logger.info("audio.acquisition_stopped", meeting_id=meeting_id, attempt=attempt)
            return None

    if stop_event.is_set():
        return None

    logger.warning("audio.synthetic_fallback", meeting_id=meeting_id, attempts=max_attempts)
    try:
        await asyncio.wait_for(driver.create_synthetic_source(), timeout=probe_timeout)
    except Exception as exc:
        msg = f"synthetic audio source could not be created: {exc}"
        raise RecordingError(msg) from exc
    audio_sources_acquired_total.labels(source=AudioSource.SYNTHETIC.value).inc()
    return AudioSource.SYNTHETIC
