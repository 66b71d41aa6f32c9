"""
REST API for chat sessions and turn submission.
"""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from consensus_engine.agent.turns import SessionNotFoundError, TurnService
from consensus_engine.api.deps import get_store, get_turn_service
from consensus_engine.models.schemas import (
    ChatSession,
    SessionSummary,
    TurnResponse,
    TurnSubmission,
)
from consensus_engine.services.session_store import SessionStore

router = APIRouter()


def _summary(session: ChatSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        title=session.title,
        turn_count=len(session.turns),
        updated_at=session.updated_at,
    )


@router.get("", response_model=List[SessionSummary])
async def list_sessions(store: SessionStore = Depends(get_store)):
    """List sessions, most recently updated first."""
    return [_summary(s) for s in store.list_sessions()]


@router.post("", response_model=ChatSession, status_code=201)
async def create_session(store: SessionStore = Depends(get_store)):
    return await store.create_session()


@router.delete("", response_model=ChatSession)
async def clear_sessions(store: SessionStore = Depends(get_store)):
    """Delete all sessions. Returns the fresh session that replaces them."""
    return await store.clear()


@router.get("/{session_id}", response_model=ChatSession)
async def get_session(session_id: str, store: SessionStore = Depends(get_store)):
    session = store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


@router.delete("/{session_id}")
async def delete_session(session_id: str, store: SessionStore = Depends(get_store)):
    if not await store.delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"status": "ok", "sessions": [_summary(s) for s in store.list_sessions()]}


@router.post("/{session_id}/turns", response_model=TurnResponse, status_code=202)
async def submit_turn(
    session_id: str,
    submission: TurnSubmission,
    service: TurnService = Depends(get_turn_service),
):
    """
    Submit a prompt to a session.

    The consensus pipeline runs in the background. Poll /api/sessions/{session_id}
    or use the WebSocket endpoint for live updates.
    """
    try:
        turn, _task = await service.start_turn(session_id, submission)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")

    return TurnResponse(
        session_id=session_id,
        turn_id=turn.id,
        status="running",
        message="Consensus pipeline started. Connect to WebSocket for real-time updates.",
    )
