"""Provider-agnostic meeting client interface.

The bot session only talks to a meeting through this protocol: fill a
field by role, click by intent, read a UI snapshot, and probe or capture
audio. Selector lists and page scripts live in concrete drivers.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from src.meetbot.bots.schemas import AudioSource

if TYPE_CHECKING:
    from src.meetbot.bots.pool import BrowserHandle


class FieldRole(str, Enum):
    DISPLAY_NAME = "display_name"
    PASSCODE = "passcode"


class ClickIntent(str, Enum):
    JOIN = "join"
    JOIN_AUDIO = "join_audio"
    DISMISS_DIALOG = "dismiss_dialog"
    LEAVE = "leave"


@dataclass
class UIState:
    """Snapshot of what the meeting page currently shows.

    Attributes:
        in_meeting: Meeting controls are present.
        waiting_room: The bot is held in a waiting room.
        end_message: An explicit "meeting ended" message is visible.
        on_exit_page: The page navigated to a post-meeting/leave URL.
        live_element_count: Number of in-meeting UI element groups present.
        error_text: A join error shown by the provider, if any.
    """

    in_meeting: bool = False
    waiting_room: bool = False
    end_message: bool = False
    on_exit_page: bool = False
    live_element_count: int = 0
    error_text: str | None = None

    @property
    def definitely_ended(self) -> bool:
        """All three end signals agree: message, exit page, no live UI."""
        return self.end_message and self.on_exit_page and self.live_element_count <= 1


@dataclass
class RawAudioChunk:
    """One encoded capture slice as delivered by the page.

    ``payload`` is base64 text; decoding happens in the recorder.
    """

    sequence: int
    timestamp_ms: int
    payload: str


class MeetingClientDriver(Protocol):
    """Drives one meeting page inside a borrowed browser."""

    async def open(self) -> None: ...

    async def navigate(self, url: str) -> None: ...

    async def fill_field(self, role: FieldRole, value: str) -> bool: ...

    async def click_by_intent(self, intent: ClickIntent) -> bool: ...

    async def query_ui_state(self) -> UIState: ...

    async def probe_audio_source(self, source: AudioSource) -> bool: ...

    async def create_synthetic_source(self) -> None: ...

    async def start_capture(self, source: AudioSource) -> str: ...

    async def drain_chunks(self) -> list[RawAudioChunk]: ...

    async def stop_capture(self) -> list[RawAudioChunk]: ...

    async def close(self) -> None: ...


DriverFactory = Callable[["BrowserHandle"], MeetingClientDriver]
