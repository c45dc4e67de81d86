"""Test fixtures for the bot worker.

Provides:
- SessionConfig with short timeouts writing into tmp_path
- A memory-mode ControlPlane
- Fake launcher, transcriber, sink and notifier instances
- A started BotWorker wired to the fakes, shut down after each test
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from src.meetbot.bots.session import SessionConfig
from src.meetbot.bots.worker import BotWorker
from src.meetbot.control.plane import ControlPlane
from src.meetbot.services.persistence import InMemoryTranscriptSink
from tests.fakes import FakeDriver, FakeLauncher, FakeNotifier, FakeTranscriber, build_worker


@pytest.fixture
def session_config(tmp_path) -> SessionConfig:
    """SessionConfig with short timeouts, recording into tmp_path."""
    return SessionConfig(
        recordings_dir=tmp_path,
        client_open_timeout=1.0,
        navigation_timeout=1.0,
        join_timeout=1.0,
        driver_call_timeout=0.5,
        ui_poll_interval=0.01,
        audio_probe_attempts=3,
        audio_probe_interval=0.01,
        chunk_drain_interval=0.01,
        transcription_timeout=2.0,
        persistence_timeout=2.0,
        notify_timeout=1.0,
    )


@pytest.fixture
def control_plane() -> ControlPlane:
    """Control plane in memory mode (no Redis URL)."""
    return ControlPlane("", worker_id="worker-test")


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def sink() -> InMemoryTranscriptSink:
    return InMemoryTranscriptSink()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def drivers() -> dict[str, FakeDriver]:
    """Drivers created by the worker's driver factory, keyed by meeting id."""
    return {}


@pytest.fixture
def driver_template() -> dict[str, Any]:
    """Keyword arguments for every FakeDriver the factory builds."""
    return {}


@pytest_asyncio.fixture
async def worker(
    launcher, control_plane, transcriber, sink, notifier, session_config, drivers, driver_template
) -> AsyncGenerator[BotWorker, None]:
    """Started BotWorker wired to fakes; shut down after the test."""
    bot_worker = build_worker(
        launcher=launcher,
        control_plane=control_plane,
        transcriber=transcriber,
        sink=sink,
        notifier=notifier,
        session_config=session_config,
        drivers=drivers,
        driver_template=driver_template,
    )
    await bot_worker.start()
    yield bot_worker
    await bot_worker.shutdown()
