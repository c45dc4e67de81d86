"""Cross-worker control plane.

Redis pub/sub channels for bot commands and meeting lifecycle events, a
TTL cache and a capped metric list, degrading to in-process behaviour
when Redis is unreachable.

Exports:
    ControlPlane: Publish/subscribe, cache and metric sink.
    ControlMessage: Message schema carried on every channel.
    ControlChannel: Enum of channel names.
    BotCommand: Commands accepted on the bot_commands channel.
"""

from __future__ import annotations

from src.meetbot.control.plane import ControlPlane
from src.meetbot.control.schemas import BotCommand, ControlChannel, ControlMessage

__all__ = [
    "BotCommand",
    "ControlChannel",
    "ControlMessage",
    "ControlPlane",
]
