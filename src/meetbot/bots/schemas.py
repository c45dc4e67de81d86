"""Pydantic schemas and enums for bot sessions.

Covers the session state machine, admission decisions, audio source tags,
status/health read models returned by the worker, and the records handed
to the transcription and persistence collaborators.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Lifecycle states of a bot session."""

    INITIALIZING = "initializing"
    NAVIGATING = "navigating"
    JOINING = "joining"
    JOINED = "joined"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    SAVE_FAILED = "save_failed"
    TRANSCRIPTION_FAILED = "transcription_failed"
    RECORDING_FAILED = "recording_failed"
    FAILED = "failed"
    CLEANED_UP = "cleaned_up"


# States after which only cleanup may follow.
OUTCOME_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.SAVE_FAILED,
        SessionState.TRANSCRIPTION_FAILED,
        SessionState.RECORDING_FAILED,
        SessionState.FAILED,
    }
)

SETUP_STATES = frozenset(
    {
        SessionState.INITIALIZING,
        SessionState.NAVIGATING,
        SessionState.JOINING,
        SessionState.JOINED,
    }
)


class AdmissionReason(str, Enum):
    OK = "ok"
    CONCURRENCY_LIMIT = "concurrency_limit"
    MEMORY_LIMIT = "memory_limit"
    SHUTTING_DOWN = "shutting_down"


class AdmissionDecision(BaseModel):
    """Result of a single admission check, computed fresh each time."""

    allowed: bool
    reason: AdmissionReason


class AudioSource(str, Enum):
    """Where captured audio comes from, in probe priority order."""

    VIDEO = "video"
    AUDIO = "audio"
    GLOBAL_HANDLE = "global_handle"
    SCREEN_CAPTURE = "screen_capture"
    SYNTHETIC = "synthetic"


class MeetingCredentials(BaseModel):
    """Everything a session needs to reach the meeting."""

    meeting_id: str
    join_url: str
    passcode: str = ""
    display_name: str = ""


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState
    message: str
    detail: dict = Field(default_factory=dict)


class SessionStatus(BaseModel):
    """Point-in-time view of a session returned by ``get_status``."""

    meeting_id: str
    state: SessionState
    started_at: datetime
    last_update_at: datetime
    stop_reason: str | None = None
    audio_source: AudioSource | None = None
    transcript_id: str | None = None
    recent_log: list[LogEntry] = Field(default_factory=list)


class ActiveSessionSummary(BaseModel):
    meeting_id: str
    state: SessionState
    uptime_seconds: float


class HealthSnapshot(BaseModel):
    """Aggregate worker health used by the detailed health endpoint."""

    active_count: int
    pool_total: int
    pool_available: int
    pool_in_use: int
    memory_usage_bytes: int
    memory_limit_bytes: int
    control_plane_mode: str
    admission: AdmissionDecision
    accepting: bool = True


class JoinStatus(str, Enum):
    CREATED = "created"
    ALREADY_ACTIVE = "already_active"


class JoinResult(BaseModel):
    meeting_id: str
    status: JoinStatus
    state: SessionState


class TranscriptionResult(BaseModel):
    text: str
    duration_seconds: float = 0.0


class TranscriptRecord(BaseModel):
    """Payload handed to the transcript sink."""

    meeting_id: str
    user_id: str
    full_text: str
    audio_duration_seconds: float
    audio_size_bytes: int
    word_count: int
    processing_time_ms: int
