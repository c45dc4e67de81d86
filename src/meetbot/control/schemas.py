"""Control-plane message schema.

Messages travel as JSON strings over Redis pub/sub channels. Delivery is
at-most-once per subscriber; nothing here is persisted.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ControlChannel(str, Enum):
    """Pub/sub channels shared by all workers."""

    BOT_COMMANDS = "bot_commands"
    MEETING_ENDED = "meeting_ended"
    MEETING_STARTED = "meeting_started"
    TRANSCRIPTION_COMPLETE = "transcription_complete"


class BotCommand(str, Enum):
    """Commands accepted on the bot_commands channel."""

    STOP = "stop"
    STOP_RECORDING = "stop_recording"
    END_MEETING = "end_meeting"


# Commands that end a local session when received.
STOP_COMMANDS = frozenset({BotCommand.STOP, BotCommand.STOP_RECORDING, BotCommand.END_MEETING})


class ControlMessage(BaseModel):
    """A single pub/sub message.

    Attributes:
        channel: Channel the message was published on.
        meeting_id: Meeting the message concerns.
        command: Command name for bot_commands, otherwise empty.
        payload: Free-form inline data.
        source_worker: Worker id of the publisher.
        timestamp: UTC creation time.
    """

    channel: ControlChannel
    meeting_id: str
    command: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    source_worker: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return json.dumps(
            {
                "channel": self.channel.value,
                "meeting_id": self.meeting_id,
                "command": self.command,
                "payload": self.payload,
                "source_worker": self.source_worker,
                "timestamp": self.timestamp.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> ControlMessage:
        """Deserialize a message produced by ``to_json()``.

        Raises:
            ValueError: If the payload is not valid JSON or fails validation.
        """
        data = json.loads(raw)
        return cls(
            channel=ControlChannel(data["channel"]),
            meeting_id=data["meeting_id"],
            command=data.get("command", ""),
            payload=data.get("payload") or {},
            source_worker=data.get("source_worker", ""),
            timestamp=datetime.fromisoformat(data["timestamp"])
            if data.get("timestamp")
            else datetime.now(timezone.utc),
        )
