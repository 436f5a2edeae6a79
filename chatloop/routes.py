import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from opentelemetry import trace
from pydantic import BaseModel

from chatloop.models import Message, ToolSchema
from chatloop.session_manager import SessionManager, validate_session_id

router = APIRouter(prefix="/v1")
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")


class TurnRequest(BaseModel):
    message: str


class MemoryStats(BaseModel):
    session_id: str
    message_count: int
    last_updated: int
    tools_available: List[str] = []


def get_session_manager(request: Request) -> SessionManager:
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return sessions


def _checked_session_id(session_id: str) -> str:
    try:
        return validate_session_id(session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


async def _existing_session(sessions: SessionManager, session_id: str):
    _checked_session_id(session_id)
    if not sessions.known(session_id):
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return await sessions.get_or_create(session_id)


@router.post("/sessions/{session_id}/turns", response_model=Optional[Message])
async def post_turn(
    session_id: str,
    body: TurnRequest,
    sessions: SessionManager = Depends(get_session_manager),
):
    _checked_session_id(session_id)
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Message must not be empty")

    with tracer.start_as_current_span("post_turn") as span:
        span.set_attribute("session.id", session_id)
        message = await sessions.process_turn(session_id, body.message)
        logger.info(f"[Routes] Turn completed for session {session_id}")
        return message


@router.get("/sessions/{session_id}/messages", response_model=List[Message])
async def get_messages(
    session_id: str, sessions: SessionManager = Depends(get_session_manager)
):
    session = await _existing_session(sessions, session_id)
    return session.memory.history()


@router.delete("/sessions/{session_id}/messages", status_code=204)
async def delete_messages(
    session_id: str, sessions: SessionManager = Depends(get_session_manager)
):
    await _existing_session(sessions, session_id)
    await sessions.clear(session_id)


@router.get("/sessions/{session_id}/stats", response_model=MemoryStats)
async def get_stats(
    session_id: str, sessions: SessionManager = Depends(get_session_manager)
):
    session = await _existing_session(sessions, session_id)
    return MemoryStats(session_id=session_id, **session.controller.memory_stats())


@router.get("/tools", response_model=List[ToolSchema])
async def list_tools(sessions: SessionManager = Depends(get_session_manager)):
    return sessions.registry.schemas()


@router.delete("/sessions/{session_id}")
async def close_session(
    session_id: str, sessions: SessionManager = Depends(get_session_manager)
):
    _checked_session_id(session_id)
    with tracer.start_as_current_span("close_session") as span:
        span.set_attribute("session.id", session_id)
        if not await sessions.close(session_id):
            logger.warning(f"[Routes] Session not found on close: {session_id}")
            raise HTTPException(status_code=404, detail="Session not found")
        return {"status": "closed"}
