"""Error taxonomy for the bot worker.

Errors raised out of the worker's public operations. Failures inside a
running session are converted to state transitions and never reach the
HTTP layer as exceptions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.meetbot.bots.schemas import AdmissionReason


class BotWorkerError(Exception):
    """Base class for all worker errors."""


class AdmissionError(BotWorkerError):
    """Admission denied a new session.

    Args:
        reason: Why the request was denied (concurrency or memory limit).
    """

    def __init__(self, reason: AdmissionReason) -> None:
        self.reason = reason
        super().__init__(f"admission denied: {reason.value}")


class JoinError(BotWorkerError):
    """A session could not be set up to join the meeting."""


class PoolExhausted(JoinError):
    """No browser handle became available before the acquire timeout."""


class RecordingError(BotWorkerError):
    """Audio capture could not be started or finalized."""


class TranscriptionError(BotWorkerError):
    """The transcription backend failed or returned an unusable response."""


class PersistenceError(BotWorkerError):
    """The transcript sink rejected or failed to store a transcript."""


class SessionNotFound(BotWorkerError):
    """No live session exists for the given meeting id."""

    def __init__(self, meeting_id: str) -> None:
        self.meeting_id = meeting_id
        super().__init__(f"no active session for meeting {meeting_id}")


class ConfigurationError(BotWorkerError):
    """Required configuration is missing or invalid at startup."""
