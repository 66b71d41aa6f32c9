"""
Shared service instances for the API layer.

Routes receive these through FastAPI's Depends, so tests can swap them with
app.dependency_overrides.
"""
from __future__ import annotations

from typing import Optional

from consensus_engine.agent.turns import TurnService
from consensus_engine.services.session_store import SessionStore

_store: Optional[SessionStore] = None
_turn_service: Optional[TurnService] = None


def get_store() -> SessionStore:
    global _store
    if _store is None:
        _store = SessionStore()
    return _store


def get_turn_service() -> TurnService:
    global _turn_service
    if _turn_service is None:
        _turn_service = TurnService(get_store())
    return _turn_service
