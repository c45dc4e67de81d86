"""Integration tests for BotWorker against fake collaborators.

Covers:
- Concurrency admission releasing capacity after stop
- Pool contention: waiting joins, PoolExhausted and cancelled joins
- One live session per meeting under concurrent joins
- Stop/status/list/health operations and retired status history
- Webhook and control-plane stop commands
- Bounded graceful shutdown
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from src.meetbot.bots.errors import AdmissionError, JoinError, PoolExhausted, SessionNotFound
from src.meetbot.bots.schemas import AdmissionReason, JoinStatus, MeetingCredentials, SessionState
from src.meetbot.control.schemas import ControlChannel, ControlMessage
from tests.fakes import FakeLauncher, FakeTranscriber, build_worker, make_chunk, outcome_of, wait_until


def creds(meeting_id: str) -> MeetingCredentials:
    return MeetingCredentials(meeting_id=meeting_id, join_url=f"https://zoom.us/wc/join/{meeting_id}?pwd=")


async def wait_recording(worker, meeting_id: str) -> None:
    def recording():
        session = worker.registry.get(meeting_id)
        return session is not None and session.recorder is not None and session.recorder.is_recording

    await wait_until(recording)


async def wait_gone(worker, meeting_id: str) -> None:
    await wait_until(lambda: worker.registry.get(meeting_id) is None)


@pytest_asyncio.fixture
async def make_worker(control_plane, transcriber, sink, notifier, session_config, drivers):
    """Factory for started workers with custom limits; all shut down on teardown."""
    started = []

    async def _make(**overrides):
        options = {
            "launcher": FakeLauncher(),
            "control_plane": control_plane,
            "transcriber": transcriber,
            "sink": sink,
            "notifier": notifier,
            "session_config": session_config,
            "drivers": drivers,
        }
        options.update(overrides)
        bot_worker = build_worker(**options)
        await bot_worker.start()
        started.append(bot_worker)
        return bot_worker

    yield _make
    for bot_worker in started:
        await bot_worker.shutdown()


# ── Admission ───────────────────────────────────────────────────────────────


class TestConcurrencyAdmission:
    """Concurrency limit and capacity reuse."""

    @pytest.mark.asyncio
    async def test_second_meeting_denied_until_first_stops(self, make_worker):
        worker = await make_worker(max_concurrent=1)

        first = await worker.request_join("m1", creds("m1"))
        assert first.status == JoinStatus.CREATED

        with pytest.raises(AdmissionError) as exc_info:
            await worker.request_join("m2", creds("m2"))
        assert exc_info.value.reason == AdmissionReason.CONCURRENCY_LIMIT

        await wait_recording(worker, "m1")
        worker.request_stop("m1")
        await wait_gone(worker, "m1")

        second = await worker.request_join("m2", creds("m2"))
        assert second.status == JoinStatus.CREATED

    @pytest.mark.asyncio
    async def test_memory_limit_denies_join(self, make_worker):
        worker = await make_worker(memory_probe=lambda: 950)

        with pytest.raises(AdmissionError) as exc_info:
            await worker.request_join("m1", creds("m1"))

        assert exc_info.value.reason == AdmissionReason.MEMORY_LIMIT
        assert worker.registry.get("m1") is None


# ── Pool Contention ─────────────────────────────────────────────────────────


class TestPoolContention:
    """Joins racing for a single browser."""

    @pytest.mark.asyncio
    async def test_waiting_join_succeeds_after_release(self, make_worker):
        launcher = FakeLauncher()
        worker = await make_worker(launcher=launcher, max_instances=1, acquire_timeout=3.0)
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        second = asyncio.create_task(worker.request_join("m2", creds("m2")))
        await asyncio.sleep(0.05)
        assert not second.done()

        worker.request_stop("m1")
        result = await asyncio.wait_for(second, timeout=3.0)

        assert result.status == JoinStatus.CREATED
        assert launcher.launched == 1

    @pytest.mark.asyncio
    async def test_waiting_join_times_out_with_pool_exhausted(self, make_worker):
        worker = await make_worker(max_instances=1, acquire_timeout=0.1)
        await worker.request_join("m1", creds("m1"))

        with pytest.raises(PoolExhausted):
            await worker.request_join("m2", creds("m2"))

        assert worker.registry.get("m2") is None
        retired = worker.get_status("m2")
        assert outcome_of(retired) == SessionState.FAILED
        assert worker.registry.get("m1") is not None

    @pytest.mark.asyncio
    async def test_launch_failure_surfaces_join_error(self, make_worker):
        worker = await make_worker(launcher=FakeLauncher(fail=True))

        with pytest.raises(JoinError):
            await worker.request_join("m1", creds("m1"))
        assert len(worker.registry) == 0

    @pytest.mark.asyncio
    async def test_cancelled_join_releases_session_and_browser_slot(self, make_worker):
        launcher = FakeLauncher(delay=0.2)
        worker = await make_worker(launcher=launcher, max_concurrent=1, max_instances=1, acquire_timeout=1.0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(worker.request_join("m1", creds("m1")), timeout=0.05)

        assert worker.registry.get("m1") is None
        assert outcome_of(worker.get_status("m1")) == SessionState.FAILED
        assert worker.pool.stats().launching == 0

        await asyncio.sleep(0.3)
        assert len(launcher.closed) == 1

        result = await worker.request_join("m2", creds("m2"))
        assert result.status == JoinStatus.CREATED


# ── Mutual Exclusion ────────────────────────────────────────────────────────


class TestOneSessionPerMeeting:
    """Concurrent joins for one meeting collapse into a single session."""

    @pytest.mark.asyncio
    async def test_concurrent_joins_create_one_session(self, worker, launcher):
        results = await asyncio.gather(*(worker.request_join("m1", creds("m1")) for _ in range(5)))

        statuses = [r.status for r in results]
        assert statuses.count(JoinStatus.CREATED) == 1
        assert statuses.count(JoinStatus.ALREADY_ACTIVE) == 4
        assert len(worker.registry) == 1
        assert launcher.launched == 1

    @pytest.mark.asyncio
    async def test_join_for_live_meeting_reports_already_active(self, worker):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        again = await worker.request_join("m1", creds("m1"))

        assert again.status == JoinStatus.ALREADY_ACTIVE
        assert again.state == SessionState.RECORDING


# ── Read Operations ─────────────────────────────────────────────────────────


class TestStatusAndHealth:
    """Stop, status, list and health snapshot."""

    @pytest.mark.asyncio
    async def test_stop_unknown_meeting_raises(self, worker):
        with pytest.raises(SessionNotFound):
            worker.request_stop("missing")

    @pytest.mark.asyncio
    async def test_status_unknown_meeting_raises(self, worker):
        with pytest.raises(SessionNotFound):
            worker.get_status("missing")

    @pytest.mark.asyncio
    async def test_status_after_cleanup_comes_from_history(self, worker, drivers):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")
        drivers["m1"].queue_chunks(make_chunk(0, b"spoken words"))
        await asyncio.sleep(0.05)

        stopped = worker.request_stop("m1", reason="manual")
        assert stopped.stop_reason == "manual"
        await wait_gone(worker, "m1")

        status = worker.get_status("m1", log_limit=3)
        assert status.state == SessionState.CLEANED_UP
        assert status.transcript_id is not None
        assert len(status.recent_log) == 3

    @pytest.mark.asyncio
    async def test_repeated_stop_is_harmless(self, worker):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        worker.request_stop("m1", reason="first")
        status = worker.request_stop("m1", reason="second")

        assert status.stop_reason == "first"

    @pytest.mark.asyncio
    async def test_list_active_and_health_snapshot(self, worker):
        await worker.request_join("m1", creds("m1"))
        await worker.request_join("m2", creds("m2"))
        await wait_recording(worker, "m1")
        await wait_recording(worker, "m2")

        active = {s.meeting_id for s in worker.list_active()}
        snapshot = worker.health_snapshot()

        assert active == {"m1", "m2"}
        assert snapshot.active_count == 2
        assert snapshot.pool_in_use == 2
        assert snapshot.pool_total == 2
        assert snapshot.control_plane_mode == "memory"
        assert snapshot.admission.allowed is True
        assert snapshot.accepting is True


# ── Commands ────────────────────────────────────────────────────────────────


class TestCommands:
    """Webhook entry points and control-plane handlers."""

    @pytest.mark.asyncio
    async def test_meeting_ended_webhook_stops_local_session(self, worker):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        stopped = await worker.handle_meeting_ended("m1", {"source": "zoom"})

        assert stopped is True
        await wait_gone(worker, "m1")
        assert worker.get_status("m1").stop_reason == "meeting_ended_webhook"

    @pytest.mark.asyncio
    async def test_meeting_ended_for_unknown_meeting(self, worker):
        assert await worker.handle_meeting_ended("elsewhere") is False

    @pytest.mark.asyncio
    async def test_stop_command_applied_locally(self, worker):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        assert await worker.handle_bot_command("m1", "stop_recording") is True
        await wait_gone(worker, "m1")

    @pytest.mark.asyncio
    async def test_unknown_command_does_not_stop(self, worker):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        assert await worker.handle_bot_command("m1", "mute") is False
        assert worker.registry.get("m1").stop_requested is False

    @pytest.mark.asyncio
    async def test_control_plane_stop_message_stops_session(self, worker):
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")

        await worker._on_bot_command(
            ControlMessage(channel=ControlChannel.BOT_COMMANDS, meeting_id="m1", command="end_meeting")
        )
        await worker._on_meeting_ended(ControlMessage(channel=ControlChannel.MEETING_ENDED, meeting_id="m1"))

        await wait_gone(worker, "m1")
        assert worker.get_status("m1").stop_reason == "command:end_meeting"


# ── Shutdown ────────────────────────────────────────────────────────────────


class TestShutdown:
    """Graceful, bounded shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_drains_sessions_and_pool(self, make_worker):
        launcher = FakeLauncher()
        worker = await make_worker(launcher=launcher)
        await worker.request_join("m1", creds("m1"))
        await worker.request_join("m2", creds("m2"))
        await wait_recording(worker, "m1")
        await wait_recording(worker, "m2")

        await worker.shutdown()

        assert len(worker.registry) == 0
        assert worker.pool.stats().total == 0
        assert len(launcher.closed) == 2
        assert launcher.stopped is True
        assert worker.get_status("m1").stop_reason == "worker_shutdown"

        with pytest.raises(AdmissionError) as exc_info:
            await worker.request_join("m3", creds("m3"))
        assert exc_info.value.reason == AdmissionReason.SHUTTING_DOWN

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, worker):
        await worker.shutdown()
        await worker.shutdown()

        assert worker.accepting is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_sessions_past_terminate_timeout(self, make_worker, drivers):
        class HangingTranscriber(FakeTranscriber):
            async def transcribe(self, audio, mime_type="audio/webm"):
                await asyncio.Event().wait()

        worker = await make_worker(transcriber=HangingTranscriber(), terminate_timeout=0.1)
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")
        drivers["m1"].queue_chunks(make_chunk(0, b"audio"))
        await asyncio.sleep(0.05)

        await asyncio.wait_for(worker.shutdown(), timeout=3.0)

        assert len(worker.registry) == 0
        assert outcome_of(worker.get_status("m1")) == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_shutdown_bounded_by_shutdown_timeout(self, make_worker, drivers):
        class HangingTranscriber(FakeTranscriber):
            async def transcribe(self, audio, mime_type="audio/webm"):
                await asyncio.Event().wait()

        worker = await make_worker(
            transcriber=HangingTranscriber(), terminate_timeout=30.0, shutdown_timeout=0.2
        )
        await worker.request_join("m1", creds("m1"))
        await wait_recording(worker, "m1")
        drivers["m1"].queue_chunks(make_chunk(0, b"audio"))
        await asyncio.sleep(0.05)

        await asyncio.wait_for(worker.shutdown(), timeout=3.0)

        assert len(worker.registry) == 0
        assert worker.pool.stats().total == 0
