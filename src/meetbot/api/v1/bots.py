"""REST endpoints for bot lifecycle: join, stop, status and listing.

Join and stop require the shared worker secret (X-API-Secret). Domain
errors from the worker are mapped to HTTP status codes here; nothing else
in the request path raises.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.meetbot.api.deps import get_worker, verify_worker_secret
from src.meetbot.bots.errors import AdmissionError, JoinError, PoolExhausted, SessionNotFound
from src.meetbot.bots.schemas import JoinStatus, LogEntry, MeetingCredentials
from src.meetbot.bots.worker import BotWorker
from src.meetbot.meeting_client.links import parse_meeting_link

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/bots", tags=["bots"])

STATUS_LOG_LIMIT = 10


# ── Request / Response Schemas ───────────────────────────────────────────────


class JoinRequest(BaseModel):
    """Join request; either a meeting id or a join URL is required."""

    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str | None = Field(default=None, alias="meetingId")
    meeting_url: str | None = Field(default=None, alias="meetingUrl")
    passcode: str = ""
    user_id: str = Field(default="", alias="userId")
    host_id: str = Field(default="", alias="hostId")
    display_name: str = Field(default="", alias="displayName")
    topic: str = ""

    @model_validator(mode="after")
    def _require_reference(self) -> JoinRequest:
        if not (self.meeting_id or "").strip() and not (self.meeting_url or "").strip():
            msg = "meeting_id or meeting_url is required"
            raise ValueError(msg)
        return self


class JoinResponse(BaseModel):
    meeting_id: str
    status: str
    state: str
    web_client_url: str


class StopRequest(BaseModel):
    reason: str = "manual"


class StatusResponse(BaseModel):
    meeting_id: str
    state: str
    started_at: datetime
    last_update_at: datetime
    stop_reason: str | None = None
    audio_source: str | None = None
    transcript_id: str | None = None
    logs: list[LogEntry] = Field(default_factory=list)


class BotListResponse(BaseModel):
    count: int
    uptime_seconds: float
    bots: list[dict] = Field(default_factory=list)


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/join", dependencies=[Depends(verify_worker_secret)])
async def join_meeting(body: JoinRequest, worker: BotWorker = Depends(get_worker)):
    """Start a bot for a meeting.

    Returns 202 for a new session and 200 when one is already active.
    """
    try:
        reference = (body.meeting_url or "").strip() or body.meeting_id or ""
        link = parse_meeting_link(reference, passcode=body.passcode)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    credentials = MeetingCredentials(
        meeting_id=link.meeting_id,
        join_url=link.web_client_url,
        passcode=link.passcode,
        display_name=body.display_name,
    )
    try:
        result = await worker.request_join(link.meeting_id, credentials, correlation_id=body.user_id)
    except AdmissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "admission_denied", "reason": exc.reason.value},
        ) from exc
    except PoolExhausted as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "pool_exhausted", "reason": str(exc)},
        ) from exc
    except JoinError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "join_failed", "reason": str(exc)},
        ) from exc

    logger.info(
        "api.join_requested",
        meeting_id=link.meeting_id,
        status=result.status.value,
        host_id=body.host_id or None,
        topic=body.topic or None,
    )
    response = JoinResponse(
        meeting_id=result.meeting_id,
        status=result.status.value,
        state=result.state.value,
        web_client_url=link.web_client_url,
    )
    code = status.HTTP_202_ACCEPTED if result.status == JoinStatus.CREATED else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=response.model_dump())


@router.post("/{meeting_id}/stop", dependencies=[Depends(verify_worker_secret)])
async def stop_bot(
    meeting_id: str,
    body: StopRequest | None = None,
    worker: BotWorker = Depends(get_worker),
) -> StatusResponse:
    """Signal a bot to stop; it transcribes if it was recording."""
    reason = body.reason if body is not None else "manual"
    try:
        session_status = worker.request_stop(meeting_id, reason=reason)
    except SessionNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _status_response(session_status, STATUS_LOG_LIMIT)


@router.get("/{meeting_id}")
async def get_bot_status(meeting_id: str, worker: BotWorker = Depends(get_worker)) -> StatusResponse:
    """Live or recently retired session status with the last log entries."""
    try:
        session_status = worker.get_status(meeting_id, log_limit=STATUS_LOG_LIMIT)
    except SessionNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _status_response(session_status, STATUS_LOG_LIMIT)


@router.get("")
async def list_bots(worker: BotWorker = Depends(get_worker)) -> BotListResponse:
    active = worker.list_active()
    return BotListResponse(
        count=len(active),
        uptime_seconds=round(worker.uptime_seconds(), 1),
        bots=[s.model_dump(mode="json") for s in active],
    )


def _status_response(session_status, log_limit: int) -> StatusResponse:
    return StatusResponse(
        meeting_id=session_status.meeting_id,
        state=session_status.state.value,
        started_at=session_status.started_at,
        last_update_at=session_status.last_update_at,
        stop_reason=session_status.stop_reason,
        audio_source=session_status.audio_source.value if session_status.audio_source else None,
        transcript_id=session_status.transcript_id,
        logs=session_status.recent_log[-log_limit:],
    )
