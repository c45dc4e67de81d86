"""Fake collaborators for bot worker tests.

FakeLauncher and FakeDriver stand in for Playwright; FakeTranscriber and
FakeNotifier record what the session hands them.
"""

from __future__ import annotations

import asyncio
import base64
import time
from types import SimpleNamespace
from typing import Any

from src.meetbot.bots.admission import AdmissionController
from src.meetbot.bots.audio import AUDIO_PROBE_ORDER
from src.meetbot.bots.pool import BrowserPool
from src.meetbot.bots.registry import SessionRegistry
from src.meetbot.bots.schemas import AudioSource, SessionState, SessionStatus, TranscriptionResult
from src.meetbot.bots.worker import BotWorker
from src.meetbot.meeting_client.driver import ClickIntent, FieldRole, RawAudioChunk, UIState

# ── Fakes ───────────────────────────────────────────────────────────────────


class FakeLauncher:
    """Launcher that hands out SimpleNamespace browsers."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.launched = 0
        self.closed: list[Any] = []
        self.stopped = False

    async def launch(self) -> Any:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("chromium failed to start")
        self.launched += 1
        return SimpleNamespace(name=f"browser-{self.launched}")

    async def close(self, browser: Any) -> None:
        self.closed.append(browser)

    async def stop(self) -> None:
        self.stopped = True


def make_chunk(sequence: int, data: bytes) -> RawAudioChunk:
    return RawAudioChunk(
        sequence=sequence,
        timestamp_ms=int(time.time() * 1000),
        payload=base64.b64encode(data).decode(),
    )


class FakeDriver:
    """Scriptable meeting client driver.

    Args:
        ui_states: States returned by successive query_ui_state calls; the
            last one repeats.
        available_sources: Sources that report a live stream.
        ready_on_round: Probe round from which available sources report live.
        join_clickable: Whether the join control is found.
        fail_open: Exception raised by open().
        hang_navigate: navigate() never returns.
        fail_synthetic: create_synthetic_source() raises.
        final_chunks: Chunks returned by stop_capture().
    """

    def __init__(
        self,
        *,
        ui_states: list[UIState] | None = None,
        available_sources: tuple[AudioSource, ...] = (AudioSource.AUDIO,),
        ready_on_round: int = 1,
        join_clickable: bool = True,
        fail_open: Exception | None = None,
        hang_navigate: bool = False,
        fail_synthetic: bool = False,
        final_chunks: list[RawAudioChunk] | None = None,
    ) -> None:
        self.ui_states = list(ui_states or [UIState(in_meeting=True, live_element_count=3)])
        self.available_sources = available_sources
        self.ready_on_round = ready_on_round
        self.join_clickable = join_clickable
        self.fail_open = fail_open
        self.hang_navigate = hang_navigate
        self.fail_synthetic = fail_synthetic
        self.final_chunks = list(final_chunks or [])

        self.calls: list[str] = []
        self.filled: dict[FieldRole, str] = {}
        self.clicked: list[ClickIntent] = []
        self.probe_rounds = 0
        self.synthetic_created = False
        self.capturing = False
        self.pending: list[RawAudioChunk] = []
        self.closed = False

    def queue_chunks(self, *chunks: RawAudioChunk) -> None:
        self.pending.extend(chunks)

    async def open(self) -> None:
        self.calls.append("open")
        if self.fail_open is not None:
            raise self.fail_open

    async def navigate(self, url: str) -> None:
        self.calls.append(f"navigate:{url}")
        if self.hang_navigate:
            await asyncio.Event().wait()

    async def fill_field(self, role: FieldRole, value: str) -> bool:
        self.filled[role] = value
        return True

    async def click_by_intent(self, intent: ClickIntent) -> bool:
        self.clicked.append(intent)
        if intent == ClickIntent.JOIN:
            return self.join_clickable
        return True

    async def query_ui_state(self) -> UIState:
        if len(self.ui_states) > 1:
            return self.ui_states.pop(0)
        return self.ui_states[0]

    async def probe_audio_source(self, source: AudioSource) -> bool:
        if source == AUDIO_PROBE_ORDER[0]:
            self.probe_rounds += 1
        return source in self.available_sources and self.probe_rounds >= self.ready_on_round

    async def create_synthetic_source(self) -> None:
        if self.fail_synthetic:
            raise RuntimeError("AudioContext unavailable")
        self.synthetic_created = True

    async def start_capture(self, source: AudioSource) -> str:
        self.capturing = True
        return "audio/webm;codecs=opus"

    async def drain_chunks(self) -> list[RawAudioChunk]:
        drained, self.pending = self.pending, []
        return drained

    async def stop_capture(self) -> list[RawAudioChunk]:
        self.capturing = False
        remaining, self.pending = self.pending + self.final_chunks, []
        return remaining

    async def close(self) -> None:
        self.closed = True


class FakeTranscriber:
    def __init__(self, text: str = "hello team, quarterly numbers look good", error: Exception | None = None):
        self.text = text
        self.error = error
        self.calls: list[tuple[int, str]] = []

    async def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> TranscriptionResult:
        self.calls.append((len(audio), mime_type))
        if self.error is not None:
            raise self.error
        return TranscriptionResult(text=self.text, duration_seconds=12.5)


class FakeNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


# ── Helpers ─────────────────────────────────────────────────────────────────


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it returns truthy or fail after ``timeout``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def outcome_of(status: SessionStatus) -> SessionState:
    """State reached just before cleanup, read from the status log."""
    for entry in reversed(status.recent_log):
        if entry.state != SessionState.CLEANED_UP:
            return entry.state
    return status.state




# ── Worker Builder ──────────────────────────────────────────────────────────


def build_worker(
    *,
    launcher: FakeLauncher,
    control_plane,
    transcriber,
    sink,
    notifier: FakeNotifier,
    session_config,
    drivers: dict[str, FakeDriver],
    driver_template: dict[str, Any] | None = None,
    max_concurrent: int = 3,
    max_instances: int = 3,
    acquire_timeout: float = 0.5,
    memory_probe=lambda: 100,
    terminate_timeout: float = 2.0,
    shutdown_timeout: float = 5.0,
) -> BotWorker:
    """BotWorker wired to fakes. Drivers are recorded by meeting id."""

    registry = SessionRegistry(history_size=20)
    pool = BrowserPool(
        launcher,
        max_instances=max_instances,
        acquire_timeout=acquire_timeout,
        poll_interval=0.01,
        cleanup_interval=300.0,
    )
    admission = AdmissionController(
        registry,
        max_concurrent_sessions=max_concurrent,
        memory_limit_bytes=1000,
        control_plane=control_plane,
        memory_probe=memory_probe,
    )

    def factory(handle):
        driver = FakeDriver(**(driver_template or {}))
        drivers[handle.owner] = driver
        return driver

    return BotWorker(
        pool=pool,
        registry=registry,
        admission=admission,
        control_plane=control_plane,
        driver_factory=factory,
        transcriber=transcriber,
        sink=sink,
        notifier=notifier,
        session_config=session_config,
        terminate_timeout=terminate_timeout,
        shutdown_timeout=shutdown_timeout,
        launcher=launcher,
    )
