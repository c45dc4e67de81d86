"""Inbound webhooks: meeting-ended notifications and bot commands.

Both act on the local session right away and then publish on the control
plane so other workers holding the meeting react too. They always answer
``{"status": "ok"}`` so senders do not retry.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from src.meetbot.api.deps import get_worker
from src.meetbot.bots.worker import BotWorker

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class MeetingEndedWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str = Field(alias="meetingId")
    payload: dict[str, Any] = Field(default_factory=dict)


class BotCommandWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str = Field(alias="meetingId")
    command: str
    payload: dict[str, Any] = Field(default_factory=dict)


@router.post("/meeting-ended")
async def meeting_ended(body: MeetingEndedWebhook, worker: BotWorker = Depends(get_worker)) -> dict:
    stopped = await worker.handle_meeting_ended(body.meeting_id, body.payload)
    logger.info("webhook.meeting_ended", meeting_id=body.meeting_id, stopped_local=stopped)
    return {"status": "ok", "stopped_local": stopped}


@router.post("/bot-command")
async def bot_command(body: BotCommandWebhook, worker: BotWorker = Depends(get_worker)) -> dict:
    stopped = await worker.handle_bot_command(body.meeting_id, body.command, body.payload)
    logger.info(
        "webhook.bot_command",
        meeting_id=body.meeting_id,
        command=body.command,
        stopped_local=stopped,
    )
    return {"status": "ok", "stopped_local": stopped}
