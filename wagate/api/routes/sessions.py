"""Session endpoints: connect, list, info, delete, stats."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from wagate.session import LifecycleController, normalize_identity
from wagate.store import SessionInfo

router = APIRouter(prefix="/api", tags=["sessions"])


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class ConnectResponse(BaseModel):
    status: str
    kind: str
    identity: str
    message: str
    qr: str | None = None
    pairing_code: str | None = None
    user_id: str | None = None


class SessionSummary(BaseModel):
    identity: str
    exists: bool
    connected: bool
    ttl: int
    expires_days: int | None = None


class SessionListResponse(BaseModel):
    status: str = "success"
    total: int
    sessions: list[SessionSummary]


class SessionDetail(BaseModel):
    identity: str
    exists: bool
    connected: bool
    ttl: int
    expires_in_human: str


class DeleteResponse(BaseModel):
    status: str = "success"
    identity: str
    message: str


class StatsResponse(BaseModel):
    total_sessions: int
    active_sessions: int
    inactive_sessions: int
    live_connections: int
    timestamp: str


def _controller(request: Request) -> LifecycleController:
    return request.app.state.controller


def _summary(info: SessionInfo) -> SessionSummary:
    return SessionSummary(
        identity=info.identity,
        exists=info.exists,
        connected=info.connected,
        ttl=info.ttl,
        expires_days=info.expires_days,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/sessions/{identity}/connect", response_model=ConnectResponse, response_model_exclude_none=True)
async def connect_session(identity: str, request: Request, response: Response) -> ConnectResponse:
    """
    Connect an identity and return its bootstrap credential or status.

    Answers within the connect deadline: a QR or pairing code for a new
    device, ``success`` for a connection that opened, ``waiting`` if
    nothing decisive happened in time, or ``error`` (HTTP 502).
    """
    result = await _controller(request).connect(identity)
    if result.is_error:
        response.status_code = 502
    return ConnectResponse(**result.to_dict())


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request) -> SessionListResponse:
    infos = await _controller(request).list_sessions()
    return SessionListResponse(total=len(infos), sessions=[_summary(i) for i in infos])


@router.get("/sessions/{identity}", response_model=SessionDetail)
async def session_info(identity: str, request: Request) -> SessionDetail:
    info = await _controller(request).info(identity)
    return SessionDetail(
        identity=info.identity,
        exists=info.exists,
        connected=info.connected,
        ttl=info.ttl,
        expires_in_human=info.expires_in_human,
    )


@router.delete("/sessions/{identity}", response_model=DeleteResponse)
async def delete_session(identity: str, request: Request) -> DeleteResponse:
    """Stop any live connection for the identity and clear its stored session."""
    identity = normalize_identity(identity)
    await _controller(request).delete(identity)
    return DeleteResponse(identity=identity, message=f"Session for {identity} deleted")


@router.get("/stats", response_model=StatsResponse)
async def stats(request: Request) -> StatsResponse:
    return StatsResponse(**await _controller(request).stats())
