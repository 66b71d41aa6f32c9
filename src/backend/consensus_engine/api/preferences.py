"""REST API for the user's persona and style preferences."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from consensus_engine.api.deps import get_store
from consensus_engine.models.schemas import UserPreferences
from consensus_engine.services.session_store import SessionStore

router = APIRouter()


@router.get("", response_model=UserPreferences)
async def get_preferences(store: SessionStore = Depends(get_store)):
    return store.get_preferences()


@router.put("", response_model=UserPreferences)
async def put_preferences(
    preferences: UserPreferences,
    store: SessionStore = Depends(get_store),
):
    """Replace the preferences. Turns already started keep their own snapshot."""
    return await store.set_preferences(preferences)
