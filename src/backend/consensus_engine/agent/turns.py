"""
Turn Service — connects the orchestrator to sessions and persistence.

Turns of the same session are serialized with a per-session lock, so each
turn sees the completed history of the turns before it. Turns of different
sessions run independently.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Callable, Dict, Optional, Set, Tuple

from consensus_engine.agent.orchestrator import Orchestrator, TurnCallbacks
from consensus_engine.models.schemas import ChatSession, ChatTurn, TurnSubmission
from consensus_engine.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    pass


class TurnService:
    """
    Usage:
        service = TurnService(store)
        turn = await service.submit(session_id, TurnSubmission(prompt="..."))
    """

    def __init__(
        self,
        store: SessionStore,
        orchestrator_factory: Callable[[], Orchestrator] = Orchestrator,
    ):
        self.store = store
        self._orchestrator_factory = orchestrator_factory
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def _prune_locks(self) -> None:
        """Forget idle locks of sessions that no longer exist."""
        for session_id, lock in list(self._locks.items()):
            if not lock.locked() and self.store.get_session(session_id) is None:
                del self._locks[session_id]

    async def start_turn(
        self,
        session_id: str,
        submission: TurnSubmission,
        callbacks: Optional[TurnCallbacks] = None,
    ) -> Tuple[ChatTurn, asyncio.Task]:
        """
        Append a new turn to the session and schedule its pipeline.

        The turn is persisted immediately in the ``framing`` stage; it starts
        running once earlier turns of the same session have finished.
        """
        self._prune_locks()
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        turn = Orchestrator.create_turn(
            submission.prompt,
            submission.attachments,
            preferences=self.store.get_preferences(),
        )
        session.turns.append(turn)
        await self.store.save_session(session)

        task = asyncio.create_task(self._run_turn(session, turn, callbacks))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return turn, task

    async def submit(
        self,
        session_id: str,
        submission: TurnSubmission,
        callbacks: Optional[TurnCallbacks] = None,
    ) -> ChatTurn:
        """Run a turn to completion and return it."""
        _turn, task = await self.start_turn(session_id, submission, callbacks)
        return await task

    async def _run_turn(
        self,
        session: ChatSession,
        turn: ChatTurn,
        callbacks: Optional[TurnCallbacks],
    ) -> ChatTurn:
        cb = callbacks or TurnCallbacks()
        forward = cb.on_turn_update

        async def persist(updated: ChatTurn) -> None:
            await self.store.save_session(session)
            if forward is not None:
                await forward(updated)

        async with self._lock_for(session.id):
            history = [t for t in session.turns if t.id != turn.id]
            orchestrator = self._orchestrator_factory()
            result = await orchestrator.run(
                turn,
                history=history,
                callbacks=dataclasses.replace(cb, on_turn_update=persist),
            )
        self._prune_locks()
        logger.info(f"Session {session.id}: turn {turn.id} finished as {result.step.value}")
        return result
