"""BotWorker -- the orchestrator behind the HTTP and control-plane surfaces.

Owns the session registry, browser pool, admission controller and control
plane, and exposes the five operations callers use: ``request_join``,
``request_stop``, ``get_status``, ``list_active`` and ``health_snapshot``.
It also reacts to bot commands and meeting-ended messages published by
other workers, and performs a bounded graceful shutdown.

A join is admitted, inserted into the registry and only then given a
browser handle, so concurrent joins for the same meeting collapse into one
session and the concurrency count includes sessions still waiting on the
pool.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any

import structlog

from src.meetbot.bots.admission import AdmissionController
from src.meetbot.bots.errors import AdmissionError, JoinError, SessionNotFound
from src.meetbot.bots.pool import BrowserPool
from src.meetbot.bots.registry import SessionRegistry
from src.meetbot.bots.schemas import (
    ActiveSessionSummary,
    AdmissionReason,
    HealthSnapshot,
    JoinResult,
    JoinStatus,
    MeetingCredentials,
    SessionStatus,
)
from src.meetbot.bots.session import BotSession, SessionConfig
from src.meetbot.control.plane import ControlPlane
from src.meetbot.control.schemas import STOP_COMMANDS, BotCommand, ControlChannel, ControlMessage

if TYPE_CHECKING:
    from src.meetbot.bots.pool import BrowserLauncher
    from src.meetbot.config import Settings
    from src.meetbot.meeting_client.driver import DriverFactory
    from src.meetbot.services.notifications import Notifier
    from src.meetbot.services.persistence import TranscriptSink
    from src.meetbot.services.transcription import Transcriber

logger = structlog.get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

STRAGGLER_CANCEL_GRACE_SECONDS = 5.0
POOL_SHUTDOWN_TIMEOUT_SECONDS = 15.0


class BotWorker:
    """Single-process orchestrator for meeting bot sessions.

    Args:
        pool: Browser pool shared by all sessions.
        registry: Live session registry.
        admission: Admission controller reading from the same registry.
        control_plane: Cross-worker messaging, cache and metrics.
        driver_factory: Builds a meeting driver from a browser handle.
        transcriber: Speech-to-text collaborator.
        sink: Transcript persistence collaborator.
        notifier: Lifecycle webhook collaborator.
        session_config: Timeouts and limits for new sessions.
        terminate_timeout: Seconds each session gets to finish on stop.
        shutdown_timeout: Hard bound on the whole graceful shutdown.
        launcher: Optional launcher stopped after the pool is drained.
    """

    def __init__(
        self,
        *,
        pool: BrowserPool,
        registry: SessionRegistry,
        admission: AdmissionController,
        control_plane: ControlPlane,
        driver_factory: DriverFactory,
        transcriber: Transcriber,
        sink: TranscriptSink,
        notifier: Notifier,
        session_config: SessionConfig,
        terminate_timeout: float = 30.0,
        shutdown_timeout: float = 60.0,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        self.pool = pool
        self.registry = registry
        self.admission = admission
        self.control_plane = control_plane
        self._driver_factory = driver_factory
        self._transcriber = transcriber
        self._sink = sink
        self._notifier = notifier
        self._session_config = session_config
        self._terminate_timeout = terminate_timeout
        self._shutdown_timeout = shutdown_timeout
        self._launcher = launcher

        self._accepting = False
        self._shut_down = False
        self._started_monotonic = time.monotonic()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        launcher: BrowserLauncher | None = None,
        driver_factory: DriverFactory | None = None,
        transcriber: Transcriber | None = None,
        sink: TranscriptSink | None = None,
        notifier: Notifier | None = None,
        control_plane: ControlPlane | None = None,
    ) -> BotWorker:
        """Build a worker with production collaborators unless overridden.

        Raises:
            ConfigurationError: Transcription is not configured.
        """
        from src.meetbot.meeting_client.playwright_driver import (
            PlaywrightBrowserLauncher,
            playwright_driver_factory,
        )
        from src.meetbot.services.notifications import WebhookNotifier
        from src.meetbot.services.persistence import HttpTranscriptSink, InMemoryTranscriptSink
        from src.meetbot.services.transcription import WhisperTranscriber

        if transcriber is None:
            transcriber = WhisperTranscriber(
                api_key=settings.OPENAI_API_KEY,
                model=settings.TRANSCRIPTION_MODEL,
                language=settings.TRANSCRIPTION_LANGUAGE,
                timeout=settings.TRANSCRIPTION_TIMEOUT,
            )
        if sink is None:
            if settings.MAIN_SERVER_URL:
                sink = HttpTranscriptSink(
                    settings.MAIN_SERVER_URL,
                    settings.MAIN_SERVER_SECRET,
                    timeout=settings.PERSISTENCE_TIMEOUT,
                )
            else:
                logger.warning("worker.in_memory_transcript_sink", hint="MAIN_SERVER_URL is not set")
                sink = InMemoryTranscriptSink()
        if notifier is None:
            notifier = WebhookNotifier(settings.WEBHOOK_URL, settings.WORKER_ID, timeout=settings.WEBHOOK_TIMEOUT)
        if launcher is None:
            launcher = PlaywrightBrowserLauncher(headless=settings.BROWSER_HEADLESS)
        if driver_factory is None:
            driver_factory = playwright_driver_factory(settings.NAVIGATION_TIMEOUT)
        if control_plane is None:
            control_plane = ControlPlane(
                settings.REDIS_URL,
                key_prefix=settings.CONTROL_PLANE_KEY_PREFIX,
                worker_id=settings.WORKER_ID,
                connect_timeout=settings.CONTROL_PLANE_CONNECT_TIMEOUT,
                op_timeout=settings.CONTROL_PLANE_OP_TIMEOUT,
            )

        registry = SessionRegistry(history_size=settings.STATUS_HISTORY_SIZE)
        pool = BrowserPool(
            launcher,
            max_instances=settings.MAX_BROWSER_INSTANCES,
            acquire_timeout=settings.POOL_ACQUIRE_TIMEOUT_SECONDS,
            poll_interval=settings.POOL_POLL_INTERVAL_SECONDS,
            cleanup_interval=settings.POOL_CLEANUP_INTERVAL_SECONDS,
        )
        admission = AdmissionController(
            registry,
            max_concurrent_sessions=settings.MAX_CONCURRENT_BOTS,
            memory_limit_bytes=settings.memory_limit_bytes,
            control_plane=control_plane,
            check_interval=settings.RESOURCE_CHECK_INTERVAL_SECONDS,
            stale_session_seconds=settings.STALE_SESSION_MINUTES * 60,
            terminate_timeout=settings.TERMINATE_TIMEOUT_SECONDS,
        )
        return cls(
            pool=pool,
            registry=registry,
            admission=admission,
            control_plane=control_plane,
            driver_factory=driver_factory,
            transcriber=transcriber,
            sink=sink,
            notifier=notifier,
            session_config=SessionConfig.from_settings(settings),
            terminate_timeout=settings.TERMINATE_TIMEOUT_SECONDS,
            shutdown_timeout=settings.SHUTDOWN_TIMEOUT_SECONDS,
            launcher=launcher,
        )

    @property
    def accepting(self) -> bool:
        return self._accepting

    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_monotonic

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect the control plane, subscribe to commands, start background loops."""
        mode = await self.control_plane.connect()
        await self.control_plane.subscribe(ControlChannel.BOT_COMMANDS, self._on_bot_command)
        await self.control_plane.subscribe(ControlChannel.MEETING_ENDED, self._on_meeting_ended)
        await self.control_plane.subscribe(ControlChannel.MEETING_STARTED, self._on_meeting_started)
        self.pool.start()
        self.admission.start()
        self._accepting = True
        self._started_monotonic = time.monotonic()
        logger.info("worker.started", worker_id=self.control_plane.worker_id, control_plane_mode=mode)

    async def shutdown(self) -> None:
        """Stop admissions, terminate sessions, drain the pool, close the control plane.

        The session drain is bounded by ``shutdown_timeout``; sessions still
        running after it are cancelled. Idempotent.
        """
        if self._shut_down:
            return
        self._shut_down = True
        self._accepting = False
        sessions = self.registry.sessions()
        logger.info("worker.shutdown_started", active_sessions=len(sessions))

        async def _drain() -> None:
            await self.admission.stop()
            await asyncio.gather(
                *(s.terminate("worker_shutdown", timeout=self._terminate_timeout) for s in sessions),
                return_exceptions=True,
            )

        try:
            await asyncio.wait_for(_drain(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            stragglers = [s.task for s in self.registry.sessions() if s.task is not None and not s.task.done()]
            logger.error("worker.shutdown_timeout", stragglers=len(stragglers))
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.wait(stragglers, timeout=STRAGGLER_CANCEL_GRACE_SECONDS)

        try:
            await asyncio.wait_for(self.pool.shutdown(), timeout=POOL_SHUTDOWN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("worker.pool_shutdown_timeout")
        await self.control_plane.close()

        stop_launcher = getattr(self._launcher, "stop", None)
        if stop_launcher is not None:
            try:
                await stop_launcher()
            except Exception:
                logger.warning("worker.launcher_stop_failed", exc_info=True)
        logger.info("worker.shutdown_complete")

    # ── Public Operations ────────────────────────────────────────────────

    async def request_join(
        self,
        meeting_id: str,
        credentials: MeetingCredentials,
        correlation_id: str = "",
    ) -> JoinResult:
        """Start a bot for ``meeting_id`` unless one is already live.

        Returns:
            ``created`` for a new session, ``already_active`` otherwise.

        Raises:
            AdmissionError: Concurrency or memory limit reached, or the
                worker is shutting down.
            PoolExhausted: No browser became available in time.
            JoinError: A browser could not be launched.
        """
        existing = self.registry.get(meeting_id)
        if existing is not None:
            return JoinResult(meeting_id=meeting_id, status=JoinStatus.ALREADY_ACTIVE, state=existing.state)

        if not self._accepting:
            raise AdmissionError(AdmissionReason.SHUTTING_DOWN)
        decision = self.admission.can_admit()
        if not decision.allowed:
            raise AdmissionError(decision.reason)

        session = BotSession(
            meeting_id,
            correlation_id,
            credentials,
            config=self._session_config,
            pool=self.pool,
            registry=self.registry,
            driver_factory=self._driver_factory,
            transcriber=self._transcriber,
            sink=self._sink,
            notifier=self._notifier,
            control_plane=self.control_plane,
        )
        existing = self.registry.insert_if_absent(session)
        if existing is not None:
            return JoinResult(meeting_id=meeting_id, status=JoinStatus.ALREADY_ACTIVE, state=existing.state)

        logger.info("worker.session_admitted", meeting_id=meeting_id, correlation_id=correlation_id)
        try:
            handle = await self.pool.acquire(owner=meeting_id)
        except JoinError as exc:
            await session.mark_failed("browser unavailable", error=str(exc))
            await session.cleanup()
            raise
        except asyncio.CancelledError:
            logger.warning("worker.join_cancelled", meeting_id=meeting_id)
            await asyncio.shield(self._abandon_session(session))
            raise

        session.attach_handle(handle)
        session.start()
        return JoinResult(meeting_id=meeting_id, status=JoinStatus.CREATED, state=session.state)

    def request_stop(self, meeting_id: str, reason: str = "manual") -> SessionStatus:
        """Signal a live session to stop. Safe to repeat.

        Raises:
            SessionNotFound: No live session for ``meeting_id``.
        """
        session = self.registry.get(meeting_id)
        if session is None:
            raise SessionNotFound(meeting_id)
        session.signal_stop(reason)
        return session.status()

    def get_status(self, meeting_id: str, log_limit: int | None = None) -> SessionStatus:
        """Status of a live session, falling back to the retired history.

        Raises:
            SessionNotFound: The meeting is neither live nor recently retired.
        """
        session = self.registry.get(meeting_id)
        if session is not None:
            return session.status(log_limit=log_limit)
        retired = self.registry.get_retired(meeting_id)
        if retired is None:
            raise SessionNotFound(meeting_id)
        if log_limit is not None:
            retired = retired.model_copy(update={"recent_log": retired.recent_log[-log_limit:]})
        return retired

    def list_active(self) -> list[ActiveSessionSummary]:
        return [s.summary() for s in self.registry.sessions()]

    def health_snapshot(self) -> HealthSnapshot:
        stats = self.pool.stats()
        decision = self.admission.evaluate()
        return HealthSnapshot(
            active_count=len(self.registry),
            pool_total=stats.total,
            pool_available=stats.available,
            pool_in_use=stats.in_use,
            memory_usage_bytes=self.admission.last_memory_sample,
            memory_limit_bytes=self.admission.memory_limit_bytes,
            control_plane_mode=self.control_plane.mode,
            admission=decision,
            accepting=self._accepting,
        )

    # ── Webhook / Command Entry Points ───────────────────────────────────

    async def handle_meeting_ended(self, meeting_id: str, payload: dict[str, Any] | None = None) -> bool:
        """Stop the local session (if any) and tell other workers.

        Returns:
            True if a local session was signalled.
        """
        stopped = self._stop_local(meeting_id, "meeting_ended_webhook")
        await self.control_plane.publish(
            ControlChannel.MEETING_ENDED,
            ControlMessage(channel=ControlChannel.MEETING_ENDED, meeting_id=meeting_id, payload=payload or {}),
        )
        return stopped

    async def handle_bot_command(
        self, meeting_id: str, command: str, payload: dict[str, Any] | None = None
    ) -> bool:
        """Apply a stop command locally right away, then publish it.

        Returns:
            True if a local session was signalled.
        """
        stopped = False
        if self._is_stop_command(command):
            stopped = self._stop_local(meeting_id, f"command:{command}")
        await self.control_plane.publish(
            ControlChannel.BOT_COMMANDS,
            ControlMessage(
                channel=ControlChannel.BOT_COMMANDS,
                meeting_id=meeting_id,
                command=command,
                payload=payload or {},
            ),
        )
        return stopped

    @staticmethod
    async def _abandon_session(session: BotSession) -> None:
        """Retire a session whose join was cancelled before it got a browser."""
        await session.mark_failed("join cancelled")
        await session.cleanup()

    def _stop_local(self, meeting_id: str, reason: str) -> bool:
        session = self.registry.get(meeting_id)
        if session is None:
            return False
        session.signal_stop(reason)
        return True

    @staticmethod
    def _is_stop_command(command: str) -> bool:
        with contextlib.suppress(ValueError):
            return BotCommand(command) in STOP_COMMANDS
        return False

    # ── Control-Plane Handlers ───────────────────────────────────────────

    async def _on_bot_command(self, message: ControlMessage) -> None:
        if not self._is_stop_command(message.command):
            logger.info("worker.command_ignored", meeting_id=message.meeting_id, command=message.command)
            return
        if self._stop_local(message.meeting_id, f"command:{message.command}"):
            logger.info("worker.command_applied", meeting_id=message.meeting_id, command=message.command)

    async def _on_meeting_ended(self, message: ControlMessage) -> None:
        if self._stop_local(message.meeting_id, "meeting_ended"):
            logger.info("worker.meeting_ended_applied", meeting_id=message.meeting_id)

    async def _on_meeting_started(self, message: ControlMessage) -> None:
        logger.info(
            "worker.meeting_started_seen",
            meeting_id=message.meeting_id,
            source_worker=message.source_worker,
        )
