"""Per-meeting bot session state machine.

One BotSession drives one meeting from setup to cleanup on its own task:

    initializing -> navigating -> joining -> joined -> recording
        -> transcribing -> {completed | save_failed | transcription_failed}
        -> cleaned_up

``failed`` is reachable from any setup step and ``recording_failed`` from
audio acquisition. ``signal_stop()`` is the only cancellation primitive: it
sets a flag and an event that every wait in the session races against, so
setup steps and the audio retry loop give up within one polling interval.
A stop before recording starts goes straight to cleanup; a stop while
recording moves the session to transcribing.

Cleanup runs on every exit path, is serialized by a lock and guarded by a
done flag, and always executes the same steps: stop capture without
uploading, close the meeting client, return the browser handle once, emit
one ``bot.cleanup`` notification, mark ``cleaned_up`` and leave the
registry (archiving the final status).
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from src.meetbot.bots.audio import acquire_audio_source
from src.meetbot.bots.errors import JoinError
from src.meetbot.bots.recorder import AudioRecorder, RecordingArtifact
from src.meetbot.bots.schemas import (
    OUTCOME_STATES,
    ActiveSessionSummary,
    AudioSource,
    LogEntry,
    MeetingCredentials,
    SessionState,
    SessionStatus,
    TranscriptRecord,
)
from src.meetbot.control.schemas import ControlChannel, ControlMessage
from src.meetbot.core.monitoring import bot_session_transitions_total
from src.meetbot.meeting_client.driver import ClickIntent, FieldRole
from src.meetbot.services.notifications import BOT_CLEANUP, MEETING_ENDED, MEETING_JOINED

if TYPE_CHECKING:
    from src.meetbot.bots.pool import BrowserHandle, BrowserPool
    from src.meetbot.bots.registry import SessionRegistry
    from src.meetbot.config import Settings
    from src.meetbot.control.plane import ControlPlane
    from src.meetbot.meeting_client.driver import DriverFactory, MeetingClientDriver
    from src.meetbot.services.notifications import Notifier
    from src.meetbot.services.persistence import TranscriptSink
    from src.meetbot.services.transcription import Transcriber

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# ── Constants ────────────────────────────────────────────────────────────────

LOG_TAIL_CAPACITY = 50
UI_POLL_INTERVAL_SECONDS = 2.0
RECORDING_START_TTL_SECONDS = 7200
TRANSCRIPT_CACHE_TTL_SECONDS = 86400
NO_MEANINGFUL_AUDIO = "no_meaningful_audio"
EMPTY_RECORDING = "empty_recording"


@dataclass
class SessionConfig:
    """Timeouts and limits applied to every session."""

    recordings_dir: Path
    display_name: str = "Meeting Recorder"
    client_open_timeout: float = 30.0
    navigation_timeout: float = 60.0
    join_timeout: float = 90.0
    driver_call_timeout: float = 15.0
    ui_poll_interval: float = UI_POLL_INTERVAL_SECONDS
    audio_probe_attempts: int = 20
    audio_probe_interval: float = 3.0
    chunk_drain_interval: float = 1.0
    min_transcript_chars: int = 3
    transcription_timeout: float = 300.0
    persistence_timeout: float = 30.0
    notify_timeout: float = 30.0
    end_detection_enabled: bool = False
    end_detection_interval: float = 10.0
    log_capacity: int = LOG_TAIL_CAPACITY

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        return cls(
            recordings_dir=settings.recordings_path(),
            display_name=settings.BOT_DISPLAY_NAME,
            client_open_timeout=settings.CLIENT_OPEN_TIMEOUT,
            navigation_timeout=settings.NAVIGATION_TIMEOUT,
            join_timeout=settings.JOIN_TIMEOUT,
            driver_call_timeout=settings.DRIVER_CALL_TIMEOUT,
            audio_probe_attempts=settings.AUDIO_PROBE_ATTEMPTS,
            audio_probe_interval=settings.AUDIO_PROBE_INTERVAL_SECONDS,
            chunk_drain_interval=settings.CHUNK_DRAIN_INTERVAL_SECONDS,
            min_transcript_chars=settings.MIN_TRANSCRIPT_CHARS,
            # Outer bound; the transcriber applies its own request timeout.
            transcription_timeout=settings.TRANSCRIPTION_TIMEOUT + 10.0,
            persistence_timeout=settings.PERSISTENCE_TIMEOUT * 3 + 10.0,
            notify_timeout=settings.WEBHOOK_TIMEOUT * 3 + 10.0,
            end_detection_enabled=settings.END_DETECTION_ENABLED,
            end_detection_interval=settings.END_DETECTION_INTERVAL_SECONDS,
        )


class _StopRequested(Exception):
    """Raised inside the session when a wait is interrupted by signal_stop."""


class BotSession:
    """State machine for one bot in one meeting.

    Args:
        meeting_id: Registry key; one live session per meeting.
        user_id: Opaque correlation id passed through to persistence.
        credentials: Join URL, passcode and display name.
        config: Session timeouts and limits.
        pool: Browser pool the handle is borrowed from.
        registry: Registry the session removes itself from on cleanup.
        driver_factory: Builds a meeting client driver from a handle.
        transcriber: Speech-to-text collaborator.
        sink: Transcript persistence collaborator.
        notifier: Lifecycle webhook collaborator.
        control_plane: Cache, metrics and pub/sub.
    """

    def __init__(
        self,
        meeting_id: str,
        user_id: str,
        credentials: MeetingCredentials,
        *,
        config: SessionConfig,
        pool: BrowserPool,
        registry: SessionRegistry,
        driver_factory: DriverFactory,
        transcriber: Transcriber,
        sink: TranscriptSink,
        notifier: Notifier,
        control_plane: ControlPlane,
    ) -> None:
        self.meeting_id = meeting_id
        self.user_id = user_id
        self.credentials = credentials
        self._config = config
        self._pool = pool
        self._registry = registry
        self._driver_factory = driver_factory
        self._transcriber = transcriber
        self._sink = sink
        self._notifier = notifier
        self._control_plane = control_plane

        now = datetime.now(timezone.utc)
        self.started_at = now
        self.last_update_at = now
        self._state = SessionState.INITIALIZING
        self._log: deque[LogEntry] = deque(maxlen=config.log_capacity)
        self._log.append(LogEntry(state=self._state, message="session created"))

        self.stop_requested = False
        self.stop_reason: str | None = None
        self._stop_event = asyncio.Event()

        self.handle: BrowserHandle | None = None
        self.driver: MeetingClientDriver | None = None
        self.recorder: AudioRecorder | None = None
        self.artifact: RecordingArtifact | None = None
        self.audio_source: AudioSource | None = None
        self.transcript_id: str | None = None
        self.transcription_attempted = False

        self._task: asyncio.Task | None = None
        self._cleanup_lock = asyncio.Lock()
        self._cleanup_started = False
        self._cleaned_up = False
        self._handle_released = False

    # ── Read Model ───────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_finished(self) -> bool:
        """True once an outcome has been reached or cleanup has run."""
        return self._state in OUTCOME_STATES or self._state == SessionState.CLEANED_UP

    @property
    def is_cleaned_up(self) -> bool:
        return self._cleaned_up

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()

    def status(self, log_limit: int | None = None) -> SessionStatus:
        entries = list(self._log)
        if log_limit is not None:
            entries = entries[-log_limit:]
        return SessionStatus(
            meeting_id=self.meeting_id,
            state=self._state,
            started_at=self.started_at,
            last_update_at=self.last_update_at,
            stop_reason=self.stop_reason,
            audio_source=self.audio_source,
            transcript_id=self.transcript_id,
            recent_log=entries,
        )

    def summary(self) -> ActiveSessionSummary:
        return ActiveSessionSummary(
            meeting_id=self.meeting_id,
            state=self._state,
            uptime_seconds=round(self.uptime_seconds(), 1),
        )

    # ── Control ──────────────────────────────────────────────────────────

    def attach_handle(self, handle: BrowserHandle) -> None:
        self.handle = handle

    async def mark_failed(self, message: str, **detail: Any) -> None:
        """Record a setup failure that happened before the session task ran."""
        await self._transition(SessionState.FAILED, message, **detail)

    def start(self) -> asyncio.Task:
        """Run the session on its own task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"bot-session-{self.meeting_id}")
        return self._task

    def signal_stop(self, reason: str) -> None:
        """Request the session to stop. Safe to call repeatedly and concurrently."""
        if self.stop_requested:
            return
        self.stop_requested = True
        self.stop_reason = reason
        self._stop_event.set()
        logger.info("session.stop_signaled", meeting_id=self.meeting_id, reason=reason, state=self._state.value)

    async def terminate(self, reason: str, timeout: float = 30.0) -> None:
        """Stop the session and wait for cleanup, cancelling it past ``timeout``."""
        self.signal_stop(reason)
        task = self._task
        if task is not None and not task.done():
            _, pending = await asyncio.wait({task}, timeout=timeout)
            if pending:
                logger.warning("session.terminate_timeout", meeting_id=self.meeting_id, timeout_seconds=timeout)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
        await self.cleanup()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Drive the session to an outcome, then always clean up."""
        try:
            await self._drive()
        except _StopRequested:
            logger.info("session.stopped_early", meeting_id=self.meeting_id, state=self._state.value)
        except asyncio.CancelledError:
            await self._transition(SessionState.FAILED, "session task cancelled")
            raise
        except Exception as exc:
            logger.error("session.unexpected_error", meeting_id=self.meeting_id, exc_info=True)
            await self._transition(SessionState.FAILED, "unexpected error", error=str(exc))
        finally:
            await self.cleanup()

    async def _drive(self) -> None:
        if self.stop_requested:
            return
        if self.handle is None:
            await self._transition(SessionState.FAILED, "no browser handle attached")
            return

        try:
            await self._setup()
        except JoinError as exc:
            logger.warning("session.join_failed", meeting_id=self.meeting_id, error=str(exc))
            await self._transition(SessionState.FAILED, "setup failed", error=str(exc))
            return

        await self._transition(SessionState.JOINED, "joined meeting")
        await self._notify(MEETING_JOINED, {"meetingId": self.meeting_id, "userId": self.user_id})
        await self._control_plane.publish(
            ControlChannel.MEETING_STARTED,
            ControlMessage(channel=ControlChannel.MEETING_STARTED, meeting_id=self.meeting_id),
        )

        if not await self._record():
            return
        await self._transcribe_and_persist()

    async def _setup(self) -> None:
        cfg = self._config
        await self._transition(SessionState.NAVIGATING, "opening meeting client")
        try:
            self.driver = self._driver_factory(self.handle)
            await self._step("open", self.driver.open(), cfg.client_open_timeout)
            await self._step("navigate", self.driver.navigate(self.credentials.join_url), cfg.navigation_timeout)

            await self._transition(SessionState.JOINING, "joining meeting")
            await self._join()
        except (_StopRequested, JoinError):
            raise
        except asyncio.TimeoutError as exc:
            raise JoinError(str(exc) or "setup step timed out") from exc
        except Exception as exc:
            msg = f"meeting client error: {exc}"
            raise JoinError(msg) from exc

    async def _join(self) -> None:
        cfg = self._config
        driver = self.driver
        name = self.credentials.display_name or cfg.display_name
        await self._step("fill_name", driver.fill_field(FieldRole.DISPLAY_NAME, name), cfg.driver_call_timeout)
        if self.credentials.passcode:
            await self._step(
                "fill_passcode",
                driver.fill_field(FieldRole.PASSCODE, self.credentials.passcode),
                cfg.driver_call_timeout,
            )
        if not await self._step("click_join", driver.click_by_intent(ClickIntent.JOIN), cfg.driver_call_timeout):
            msg = "join control not found"
            raise JoinError(msg)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.join_timeout
        waiting_logged = False
        while True:
            ui = await self._step("query_ui", driver.query_ui_state(), cfg.driver_call_timeout)
            if ui.in_meeting:
                break
            if ui.error_text:
                msg = f"meeting client rejected join: {ui.error_text}"
                raise JoinError(msg)
            if ui.waiting_room and not waiting_logged:
                waiting_logged = True
                self._append_log("waiting room, awaiting host admission")
            if loop.time() >= deadline:
                msg = f"not admitted within {cfg.join_timeout:.0f}s"
                raise JoinError(msg)
            await self._sleep_or_stop(cfg.ui_poll_interval)

        try:
            await self._step("join_audio", driver.click_by_intent(ClickIntent.JOIN_AUDIO), cfg.driver_call_timeout)
        except _StopRequested:
            raise
        except Exception:
            logger.debug("session.join_audio_failed", meeting_id=self.meeting_id, exc_info=True)

    async def _record(self) -> bool:
        """Acquire audio and record until stopped.

        Returns:
            True when a recording was captured and should be transcribed.
        """
        cfg = self._config
        await self._transition(SessionState.RECORDING, "acquiring audio source")
        try:
            source = await acquire_audio_source(
                self.driver,
                self._stop_event,
                max_attempts=cfg.audio_probe_attempts,
                retry_interval=cfg.audio_probe_interval,
                probe_timeout=cfg.driver_call_timeout,
                meeting_id=self.meeting_id,
            )
            if source is None:
                return False
            self.audio_source = source
            self.recorder = AudioRecorder(
                self.driver,
                self.meeting_id,
                cfg.recordings_dir,
                drain_interval=cfg.chunk_drain_interval,
                call_timeout=cfg.driver_call_timeout,
            )
            await self.recorder.start(source)
        except Exception as exc:
            logger.warning("session.recording_failed", meeting_id=self.meeting_id, error=str(exc))
            await self._transition(SessionState.RECORDING_FAILED, "audio capture failed", error=str(exc))
            return False

        self._append_log("recording started", source=source.value)
        await self._control_plane.set_cache(
            f"recording:{self.meeting_id}:start",
            {"startedAt": self.recorder.started_at_ms, "source": source.value, "userId": self.user_id},
            ttl=RECORDING_START_TTL_SECONDS,
        )

        await self._wait_while_recording()
        await self._notify(
            MEETING_ENDED,
            {"meetingId": self.meeting_id, "reason": self.stop_reason, "chunks": self.recorder.chunk_count},
        )
        return True

    async def _wait_while_recording(self) -> None:
        cfg = self._config
        if not cfg.end_detection_enabled:
            await self._stop_event.wait()
            return
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=cfg.end_detection_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                ui = await asyncio.wait_for(self.driver.query_ui_state(), timeout=cfg.driver_call_timeout)
            except Exception:
                logger.debug("session.end_check_failed", meeting_id=self.meeting_id, exc_info=True)
                continue
            if ui.definitely_ended:
                self.signal_stop("meeting_ended_ui")

    async def _transcribe_and_persist(self) -> None:
        # Cleanup already took the recording without upload.
        if self.transcription_attempted or self._cleanup_started:
            return
        self.transcription_attempted = True
        cfg = self._config

        await self._transition(SessionState.TRANSCRIBING, "finalizing recording", reason=self.stop_reason)
        try:
            self.artifact = await self.recorder.stop()
        except Exception as exc:
            await self._transition(SessionState.RECORDING_FAILED, "recording could not be finalized", error=str(exc))
            return

        artifact = self.artifact
        if artifact is None or artifact.size_bytes == 0:
            await self._transition(SessionState.TRANSCRIPTION_FAILED, "recording is empty", reason=EMPTY_RECORDING)
            await self._record_transcription_metrics(success=False, elapsed_ms=0)
            return

        started = time.monotonic()
        try:
            audio = await artifact.read_bytes()
            result = await asyncio.wait_for(
                self._transcriber.transcribe(audio, artifact.mime_type),
                timeout=cfg.transcription_timeout,
            )
        except Exception as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning("session.transcription_failed", meeting_id=self.meeting_id, error=str(exc))
            await self._transition(
                SessionState.TRANSCRIPTION_FAILED,
                "transcription failed",
                error=str(exc) or type(exc).__name__,
                artifact=str(artifact.path),
            )
            await self._record_transcription_metrics(success=False, elapsed_ms=elapsed_ms)
            return

        text = result.text.strip()
        if len(text) < cfg.min_transcript_chars:
            await self._transition(
                SessionState.TRANSCRIPTION_FAILED,
                "no meaningful audio in transcript",
                reason=NO_MEANINGFUL_AUDIO,
                chars=len(text),
                artifact=str(artifact.path),
            )
            await self._record_transcription_metrics(success=False, elapsed_ms=int((time.monotonic() - started) * 1000))
            return

        word_count = len(text.split())
        processing_ms = int((time.monotonic() - started) * 1000)
        record = TranscriptRecord(
            meeting_id=self.meeting_id,
            user_id=self.user_id,
            full_text=text,
            audio_duration_seconds=result.duration_seconds or artifact.duration_seconds,
            audio_size_bytes=artifact.size_bytes,
            word_count=word_count,
            processing_time_ms=processing_ms,
        )
        try:
            transcript_id = await asyncio.wait_for(self._sink.save_transcript(record), timeout=cfg.persistence_timeout)
        except Exception as exc:
            logger.warning(
                "session.save_failed",
                meeting_id=self.meeting_id,
                error=str(exc),
                artifact=str(artifact.path),
            )
            await self._transition(
                SessionState.SAVE_FAILED,
                "transcript could not be saved",
                error=str(exc) or type(exc).__name__,
                artifact=str(artifact.path),
            )
            await self._record_transcription_metrics(success=False, elapsed_ms=processing_ms)
            return

        self.transcript_id = transcript_id
        await self._transition(
            SessionState.COMPLETED,
            "transcript saved",
            transcript_id=transcript_id,
            word_count=word_count,
        )
        await self._record_transcription_metrics(success=True, elapsed_ms=processing_ms)
        await self._control_plane.set_cache(
            f"transcript:{self.meeting_id}",
            {"transcriptId": transcript_id, "wordCount": word_count, "text": text},
            ttl=TRANSCRIPT_CACHE_TTL_SECONDS,
        )
        await self._control_plane.publish(
            ControlChannel.TRANSCRIPTION_COMPLETE,
            ControlMessage(
                channel=ControlChannel.TRANSCRIPTION_COMPLETE,
                meeting_id=self.meeting_id,
                payload={
                    "transcriptId": transcript_id,
                    "processingTime": processing_ms,
                    "wordCount": word_count,
                },
            ),
        )
        try:
            await artifact.delete()
        except OSError:
            logger.warning("session.artifact_delete_failed", meeting_id=self.meeting_id, exc_info=True)

    async def _record_transcription_metrics(self, success: bool, elapsed_ms: int) -> None:
        tags = {"meetingId": self.meeting_id}
        await self._control_plane.record_metric("transcription_duration", elapsed_ms, tags)
        await self._control_plane.record_metric("transcription_success", 1 if success else 0, tags)

    # ── Cleanup ──────────────────────────────────────────────────────────

    async def cleanup(self) -> None:
        """Release every resource the session holds. Idempotent."""
        async with self._cleanup_lock:
            if self._cleaned_up:
                return
            self._cleanup_started = True
            final_state = self._state
            if not self.stop_requested:
                self.signal_stop("cleanup")
            cfg = self._config

            if self.recorder is not None and self.recorder.is_recording:
                try:
                    self.artifact = await self.recorder.stop()
                    if self.artifact is not None:
                        self._append_log("recording kept without upload", artifact=str(self.artifact.path))
                except Exception:
                    logger.warning("session.recorder_stop_failed", meeting_id=self.meeting_id, exc_info=True)

            if self.driver is not None:
                try:
                    await asyncio.wait_for(self.driver.close(), timeout=cfg.driver_call_timeout)
                except Exception:
                    logger.warning("session.driver_close_failed", meeting_id=self.meeting_id, exc_info=True)

            if self.handle is not None and not self._handle_released:
                self._handle_released = True
                try:
                    await self._pool.release(self.handle)
                except Exception:
                    logger.error("session.handle_release_failed", meeting_id=self.meeting_id, exc_info=True)

            await self._notify(
                BOT_CLEANUP,
                {
                    "meetingId": self.meeting_id,
                    "finalState": final_state.value,
                    "reason": self.stop_reason,
                    "transcriptId": self.transcript_id,
                },
            )

            await self._transition(SessionState.CLEANED_UP, "cleaned up", final_state=final_state.value)
            self._cleaned_up = True
            self._registry.remove(self)
            self._registry.archive(self.status())

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _step(self, name: str, work: Awaitable[T], timeout: float) -> T:
        """Await ``work`` racing the stop signal, bounded by ``timeout``.

        Raises:
            _StopRequested: The stop signal fired first.
            asyncio.TimeoutError: ``timeout`` elapsed first.
        """
        if self._stop_event.is_set():
            if asyncio.iscoroutine(work):
                work.close()
            raise _StopRequested
        work_task = asyncio.ensure_future(work)
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work_task, stop_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_task.cancel()
            if not work_task.done():
                work_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await work_task
        if work_task in done:
            return work_task.result()
        if stop_task in done:
            raise _StopRequested
        msg = f"{name} timed out after {timeout:.0f}s"
        raise asyncio.TimeoutError(msg)

    async def _sleep_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise _StopRequested

    def _append_log(self, message: str, **detail: Any) -> None:
        self._log.append(LogEntry(state=self._state, message=message, detail=detail))

    async def _transition(self, state: SessionState, message: str, **detail: Any) -> None:
        if self._state == SessionState.CLEANED_UP:
            return
        previous = self._state
        self._state = state
        self.last_update_at = datetime.now(timezone.utc)
        self._log.append(LogEntry(timestamp=self.last_update_at, state=state, message=message, detail=detail))
        bot_session_transitions_total.labels(state=state.value).inc()
        logger.info(
            "session.state_changed",
            meeting_id=self.meeting_id,
            previous=previous.value,
            state=state.value,
            message=message,
            **detail,
        )
        await self._control_plane.record_metric(
            "bot_status_change",
            1,
            {"meetingId": self.meeting_id, "from": previous.value, "to": state.value},
        )

    async def _notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self._notifier.notify(event, payload), timeout=self._config.notify_timeout)
        except Exception:
            logger.warning("session.notify_failed", meeting_id=self.meeting_id, notify_event=event, exc_info=True)
