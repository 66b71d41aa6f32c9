"""
Session Store — persists user preferences and chat sessions.

Simple JSON file storage with two keys, no database needed:
  - consensus_prefs    → UserPreferences
  - consensus_sessions → list of ChatSession

The whole store is held in memory and rewritten on every save. In privacy
mode nothing is written to disk.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from consensus_engine.config import settings
from consensus_engine.models.schemas import ChatSession, UserPreferences

logger = logging.getLogger(__name__)

PREFS_KEY = "consensus_prefs"
SESSIONS_KEY = "consensus_sessions"


class SessionStore:
    """In-memory session/preferences store backed by a JSON file."""

    def __init__(self, path: Union[str, Path, None] = None, persist: Optional[bool] = None):
        self.path = Path(path or settings.sessions_file)
        self.persist = (not settings.privacy_mode) if persist is None else persist
        self._lock = asyncio.Lock()
        self._preferences = UserPreferences()
        self._sessions: Dict[str, ChatSession] = {}
        self._load()

    def _load(self) -> None:
        if not self.persist or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read session store {self.path}: {e}")
            return

        if PREFS_KEY in raw:
            try:
                self._preferences = UserPreferences.model_validate(raw[PREFS_KEY])
            except ValidationError as e:
                logger.warning(f"Ignoring invalid stored preferences: {e}")

        for entry in raw.get(SESSIONS_KEY, []):
            try:
                session = ChatSession.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Skipping invalid stored session: {e}")
                continue
            # Empty sessions from earlier runs are dropped to keep history clean
            if session.turns:
                self._sessions[session.id] = session
        logger.info(f"Loaded {len(self._sessions)} session(s) from {self.path}")

    async def save(self) -> None:
        if not self.persist:
            return
        async with self._lock:
            payload = {
                PREFS_KEY: self._preferences.model_dump(mode="json"),
                SESSIONS_KEY: [s.model_dump(mode="json") for s in self._sessions.values()],
            }
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.path.with_suffix(self.path.suffix + ".tmp")
                tmp.write_text(json.dumps(payload), encoding="utf-8")
                tmp.replace(self.path)
            except OSError as e:
                logger.error(f"Failed to save session store: {e}")

    # ──────────────────────────────────────────────
    # Preferences
    # ──────────────────────────────────────────────

    def get_preferences(self) -> UserPreferences:
        return self._preferences.model_copy()

    async def set_preferences(self, preferences: UserPreferences) -> UserPreferences:
        self._preferences = preferences.model_copy()
        await self.save()
        return self.get_preferences()

    # ──────────────────────────────────────────────
    # Sessions
    # ──────────────────────────────────────────────

    def list_sessions(self) -> List[ChatSession]:
        """All sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    async def create_session(self) -> ChatSession:
        session = ChatSession(id=str(uuid.uuid4())[:8])
        self._sessions[session.id] = session
        await self.save()
        return session

    async def save_session(self, session: ChatSession) -> None:
        """Persist a session snapshot. Sessions deleted meanwhile stay deleted."""
        if self._sessions.get(session.id) is not session:
            return
        session.refresh_title()
        session.updated_at = datetime.now(timezone.utc)
        await self.save()

    async def delete_session(self, session_id: str) -> bool:
        """Delete one session; the store always keeps at least one (possibly empty)."""
        removed = self._sessions.pop(session_id, None) is not None
        if not self._sessions:
            await self.create_session()
        else:
            await self.save()
        return removed

    async def clear(self) -> ChatSession:
        """Drop all history and start over with a single blank session."""
        self._sessions.clear()
        return await self.create_session()
