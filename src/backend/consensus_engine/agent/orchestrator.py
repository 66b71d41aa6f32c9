"""
Turn Orchestrator — the state machine behind every chat turn.

Controls the consensus pipeline:
  1. Framing detection   (framing classifier)
  2. Routing             (expert router)
  3. Gathering           (worker pool, experts run in parallel)
  4. Judging             (streaming synthesis)
  5. Criticizing         (post-hoc audit)

Each stage has its own local recovery path, so a failing expert, judge or
critic still lets the turn reach ``complete``. Only an exception escaping the
orchestration itself moves the turn to ``error``. Progress is reported to the
caller through TurnCallbacks after every stage.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from consensus_engine.models.schemas import (
    ChatTurn,
    ExpertProfile,
    FileAttachment,
    TurnStage,
    UserPreferences,
    WorkerResult,
)
from consensus_engine.services.llm import LLMService
from consensus_engine.services.usage import UsageLedger
from consensus_engine.tools.critic import CriticAuditorTool
from consensus_engine.tools.framing import FramingClassifierTool
from consensus_engine.tools.judge import JudgeSynthesizerTool
from consensus_engine.tools.router import ExpertRouterTool
from consensus_engine.tools.workers import WorkerPoolExecutor

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Critical process failure."

STAGE_ORDER = (
    TurnStage.FRAMING,
    TurnStage.ROUTING,
    TurnStage.GATHERING,
    TurnStage.JUDGING,
    TurnStage.CRITICIZING,
    TurnStage.COMPLETE,
)


class InvalidTransitionError(RuntimeError):
    """A stage change that would move a turn backwards or out of a terminal state."""


@dataclass
class TurnCallbacks:
    """
    Caller-facing progress hooks. All are optional coroutines.

    on_turn_update receives the live turn after every stage and worker
    completion, for the persistence layer to serialize.
    """
    on_stage_change: Optional[Callable[[TurnStage], Awaitable[None]]] = None
    on_experts_selected: Optional[Callable[[List[ExpertProfile]], Awaitable[None]]] = None
    on_worker_update: Optional[Callable[[List[WorkerResult]], Awaitable[None]]] = None
    on_synthesis_chunk: Optional[Callable[[str], Awaitable[None]]] = None
    on_turn_update: Optional[Callable[[ChatTurn], Awaitable[None]]] = None
    on_complete: Optional[Callable[[ChatTurn], Awaitable[None]]] = None
    on_error: Optional[Callable[[str], Awaitable[None]]] = None


class Orchestrator:
    """
    Runs one chat turn through the consensus pipeline.

    Usage:
        orchestrator = Orchestrator()
        turn = Orchestrator.create_turn("Explain CRDTs", preferences=prefs)
        turn = await orchestrator.run(turn, history=session.turns, callbacks=callbacks)
    """

    def __init__(
        self,
        framing: Optional[FramingClassifierTool] = None,
        router: Optional[ExpertRouterTool] = None,
        workers: Optional[WorkerPoolExecutor] = None,
        judge: Optional[JudgeSynthesizerTool] = None,
        critic: Optional[CriticAuditorTool] = None,
        llm: Optional[LLMService] = None,
    ):
        llm = llm or LLMService()
        self.framing_classifier = framing or FramingClassifierTool(llm)
        self.router = router or ExpertRouterTool(llm)
        self.workers = workers or WorkerPoolExecutor(llm=llm)
        self.judge = judge or JudgeSynthesizerTool(llm)
        self.critic = critic or CriticAuditorTool(llm)

        self._turn: Optional[ChatTurn] = None
        self._ledger: Optional[UsageLedger] = None

    @property
    def turn(self) -> Optional[ChatTurn]:
        return self._turn

    @property
    def ledger(self) -> Optional[UsageLedger]:
        return self._ledger

    @staticmethod
    def create_turn(
        prompt: str,
        attachments: Sequence[FileAttachment] = (),
        preferences: Optional[UserPreferences] = None,
    ) -> ChatTurn:
        """A fresh turn in the ``framing`` stage with a snapshot of the preferences."""
        return ChatTurn(
            id=str(uuid.uuid4())[:8],
            user_prompt=prompt,
            attachments=list(attachments),
            preferences_at_time=preferences.model_copy() if preferences else None,
        )

    async def run(
        self,
        turn: ChatTurn,
        history: Sequence[ChatTurn] = (),
        callbacks: Optional[TurnCallbacks] = None,
    ) -> ChatTurn:
        """
        Run the full pipeline for ``turn``, mutating it in place.

        The history is snapshotted up front, so later changes to the caller's
        session do not leak into this turn.

        Returns:
            The same turn, in ``complete`` or ``error``
        """
        if turn.step != TurnStage.FRAMING:
            raise InvalidTransitionError(f"Turn {turn.id} already started ({turn.step.value})")

        cb = callbacks or TurnCallbacks()
        snapshot = tuple(t.model_copy(deep=True) for t in history if t.id != turn.id)
        preferences = turn.preferences_at_time
        prompt = turn.user_prompt
        attachments = list(turn.attachments)

        self._turn = turn
        self._ledger = UsageLedger(turn_id=turn.id)

        try:
            await self._notify(cb.on_stage_change, turn.step)
            await self._notify(cb.on_turn_update, turn)

            # ── Stage 1: Framing ──
            framing = await self.framing_classifier.run(prompt, ledger=self._ledger)
            await self._transition(cb, TurnStage.ROUTING, framing_profile=framing)

            # ── Stage 2: Routing ──
            experts = await self.router.run(
                prompt, attachments, snapshot, preferences, framing, ledger=self._ledger
            )
            await self._transition(
                cb,
                TurnStage.GATHERING,
                selected_experts=list(experts),
                worker_results=[WorkerResult(expert=e) for e in experts],
            )
            await self._notify(cb.on_experts_selected, list(experts))

            # ── Stage 3: Gathering ──
            async def on_worker_update(results: List[WorkerResult]) -> None:
                turn.worker_results = results
                await self._notify(cb.on_worker_update, results)
                await self._notify(cb.on_turn_update, turn)

            results = await self.workers.run(
                experts, prompt, attachments, snapshot, preferences, framing,
                on_update=on_worker_update, ledger=self._ledger,
            )
            worker_tokens = sum(r.estimated_tokens or 0 for r in results)
            await self._transition(
                cb, TurnStage.JUDGING, worker_results=list(results), total_tokens=worker_tokens
            )

            # ── Stage 4: Judging (streaming) ──
            async def on_chunk(fragment: str) -> None:
                turn.consensus_content += fragment
                await self._notify(cb.on_synthesis_chunk, fragment)

            judge_tokens = await self.judge.run(
                prompt, results, snapshot, preferences, framing,
                on_chunk=on_chunk, ledger=self._ledger,
            )
            await self._transition(
                cb, TurnStage.CRITICIZING, total_tokens=worker_tokens + judge_tokens
            )

            # ── Stage 5: Criticizing ──
            review = await self.critic.run(
                prompt, results, turn.consensus_content, framing, ledger=self._ledger
            )
            await self._transition(
                cb,
                TurnStage.COMPLETE,
                critic_content=review.text,
                total_tokens=worker_tokens + judge_tokens + review.tokens,
                completed_at=datetime.now(timezone.utc),
            )

        except Exception:
            logger.exception(f"Turn {turn.id} failed in stage '{turn.step.value}'")
            await self._fail(cb)
            return turn

        logger.info(f"Turn {turn.id} complete: {self._ledger.to_dict()}")
        await self._notify_safely(cb.on_complete, turn)
        return turn

    async def _transition(self, cb: TurnCallbacks, stage: TurnStage, **changes: Any) -> None:
        """Apply ``changes``, move the turn forward to ``stage`` and notify the caller."""
        turn = self._turn
        self._check_transition(turn.step, stage)
        for name, value in changes.items():
            setattr(turn, name, value)
        turn.step = stage
        logger.info(f"Turn {turn.id} → {stage.value}")
        await self._notify(cb.on_stage_change, stage)
        await self._notify(cb.on_turn_update, turn)

    @staticmethod
    def _check_transition(current: TurnStage, target: TurnStage) -> None:
        if current in (TurnStage.COMPLETE, TurnStage.ERROR):
            raise InvalidTransitionError(f"Turn is already terminal ({current.value})")
        if target == TurnStage.ERROR:
            return
        if STAGE_ORDER.index(target) <= STAGE_ORDER.index(current):
            raise InvalidTransitionError(
                f"Cannot move from '{current.value}' back to '{target.value}'"
            )

    async def _fail(self, cb: TurnCallbacks) -> None:
        turn = self._turn
        if turn.step in (TurnStage.COMPLETE, TurnStage.ERROR):
            return
        turn.step = TurnStage.ERROR
        turn.error = GENERIC_FAILURE_MESSAGE
        turn.completed_at = datetime.now(timezone.utc)
        await self._notify_safely(cb.on_stage_change, TurnStage.ERROR)
        await self._notify_safely(cb.on_turn_update, turn)
        await self._notify_safely(cb.on_error, GENERIC_FAILURE_MESSAGE)

    @staticmethod
    async def _notify(callback: Optional[Callable[..., Awaitable[None]]], *args: Any) -> None:
        if callback is not None:
            await callback(*args)

    @staticmethod
    async def _notify_safely(callback: Optional[Callable[..., Awaitable[None]]], *args: Any) -> None:
        """Notify after the turn is terminal; a failing caller cannot change the outcome."""
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception as e:
            logger.error(f"Turn callback {getattr(callback, '__name__', callback)} failed: {e}")
