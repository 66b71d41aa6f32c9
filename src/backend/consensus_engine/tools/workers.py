"""
Tool: Worker Pool Executor

Runs one backend call per selected expert, concurrently, via asyncio.gather().

  - Launches are staggered by ``index * worker_stagger_seconds`` to avoid
    bursting the backend.
  - Rate-limited calls are retried with exponential backoff; other errors
    fail the worker immediately.
  - Every worker is isolated: its exception becomes an ``error`` result and
    never cancels or blocks its siblings.
  - Results keep selection order; each completion replaces its own slot and
    publishes a snapshot of the whole list through ``on_update``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from consensus_engine.agent.experts import GLOBAL_SYSTEM_PROMPT
from consensus_engine.config import settings
from consensus_engine.models.schemas import (
    ActionDraft,
    ChatTurn,
    ExpertProfile,
    ExpertTool,
    ExpertType,
    FileAttachment,
    FramingProfile,
    UserPreferences,
    WorkerResult,
    WorkerStatus,
)
from consensus_engine.services.llm import LLMService
from consensus_engine.services.media import MediaJob, MediaService
from consensus_engine.services.retry import RetryPolicy
from consensus_engine.services.usage import (
    IMAGE_TOKEN_ESTIMATE,
    VIDEO_TOKEN_ESTIMATE,
    UsageLedger,
    elapsed_ms,
    estimate_tokens,
)
from consensus_engine.tools.context import (
    active_preferences,
    format_history,
    framing_constraints,
    join_sections,
)

logger = logging.getLogger(__name__)

# Receives a fresh copy of the full result list after every completion
WorkerUpdateCallback = Callable[[List[WorkerResult]], Awaitable[None]]

ACTION_BLOCK_RE = re.compile(r"```json\s*\n(.*?)\n\s*```", re.DOTALL)

VIDEO_KEY_REQUIRED = (
    "Video generation requires a configured video API key. "
    "Set VIDEO_API_KEY and retry."
)


class WorkerPoolExecutor:
    """
    Dispatches the selected experts concurrently and collects their results.

    Usage:
        executor = WorkerPoolExecutor()
        results = await executor.run(experts, prompt, on_update=publish)
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        media: Optional[MediaService] = None,
        retry: Optional[RetryPolicy] = None,
        stagger_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.llm = llm or LLMService()
        self.media = media or MediaService()
        self.retry = retry or RetryPolicy()
        self.stagger_seconds = (
            settings.worker_stagger_seconds if stagger_seconds is None else stagger_seconds
        )
        self.poll_interval_seconds = (
            settings.media_poll_interval_seconds
            if poll_interval_seconds is None else poll_interval_seconds
        )
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        experts: Sequence[ExpertProfile],
        prompt: str,
        attachments: Sequence[FileAttachment] = (),
        history: Sequence[ChatTurn] = (),
        preferences: Optional[UserPreferences] = None,
        framing: Optional[FramingProfile] = None,
        on_update: Optional[WorkerUpdateCallback] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> List[WorkerResult]:
        """
        Run every expert and wait for all of them to settle.

        Returns:
            One WorkerResult per expert, in selection order, each either
            ``success`` or ``error``

        Raises:
            The first exception raised by ``on_update``, once every worker
            has settled
        """
        results: List[WorkerResult] = [WorkerResult(expert=expert) for expert in experts]

        async def publish(index: int, result: WorkerResult) -> None:
            results[index] = result
            if on_update:
                await on_update(list(results))

        tasks = [
            self._run_worker(
                index, expert, prompt, attachments, history, preferences, framing, publish, ledger
            )
            for index, expert in enumerate(experts)
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        # _run_worker contains backend failures; anything left came from on_update
        callback_errors = [o for o in outcomes if isinstance(o, Exception)]
        if callback_errors:
            logger.error(f"Worker update callback failed: {callback_errors[0]}")
            raise callback_errors[0]

        succeeded = sum(1 for r in results if r.status == WorkerStatus.SUCCESS)
        logger.info(f"Worker pool settled: {succeeded}/{len(results)} succeeded")
        return results

    async def _run_worker(
        self,
        index: int,
        expert: ExpertProfile,
        prompt: str,
        attachments: Sequence[FileAttachment],
        history: Sequence[ChatTurn],
        preferences: Optional[UserPreferences],
        framing: Optional[FramingProfile],
        publish: Callable[[int, WorkerResult], Awaitable[None]],
        ledger: Optional[UsageLedger],
    ) -> None:
        if index and self.stagger_seconds > 0:
            await self._sleep(index * self.stagger_seconds)

        attempts = 0

        def count_attempt(n: int) -> None:
            nonlocal attempts
            attempts = n

        t0 = time.monotonic()
        try:
            if expert.type == ExpertType.VIDEO and not self.media.has_video_credential():
                # Configuration problem, not a transient one: no retry
                result = WorkerResult(
                    expert=expert,
                    content=f"Error: {VIDEO_KEY_REQUIRED}",
                    status=WorkerStatus.ERROR,
                    requires_key_selection=True,
                )
            elif expert.type == ExpertType.VIDEO:
                job = await self.retry.run(
                    lambda: self._submit_media(expert, prompt), label=expert.id, on_attempt=count_attempt
                )
                job = await self._await_media(job)
                result = WorkerResult(
                    expert=expert,
                    content="Video generated.",
                    video_uri=job.video_uri,
                    status=WorkerStatus.SUCCESS,
                    estimated_tokens=VIDEO_TOKEN_ESTIMATE,
                )
            elif expert.type == ExpertType.IMAGE:
                job = await self.retry.run(
                    lambda: self._submit_media(expert, prompt), label=expert.id, on_attempt=count_attempt
                )
                job = await self._await_media(job)
                result = WorkerResult(
                    expert=expert,
                    content="Image generated.",
                    images=job.images,
                    status=WorkerStatus.SUCCESS,
                    estimated_tokens=IMAGE_TOKEN_ESTIMATE,
                )
            else:
                # text, action and critic experts are all plain text calls
                system_prompt = join_sections(
                    GLOBAL_SYSTEM_PROMPT, framing_constraints(framing), expert.system_instruction
                )
                user_prompt = self._build_user_prompt(prompt, history, preferences)
                completion = await self.retry.run(
                    lambda: self.llm.complete(
                        user_prompt,
                        system_prompt=system_prompt,
                        model=expert.model,
                        attachments=attachments,
                        web_search=(
                            settings.enable_web_search and ExpertTool.WEB_SEARCH in expert.tools
                        ),
                    ),
                    label=expert.id,
                    on_attempt=count_attempt,
                )
                content = completion.text
                result = WorkerResult(
                    expert=expert,
                    content=content,
                    status=WorkerStatus.SUCCESS,
                    grounding_urls=completion.citations,
                    action_draft=extract_action_draft(content),
                    estimated_tokens=estimate_tokens(content),
                )
                if ledger is not None:
                    ledger.record(f"worker_{expert.id}", system_prompt + user_prompt, content, elapsed_ms(t0))
        except Exception as e:
            logger.warning(f"Worker {expert.id} failed after {attempts} attempt(s): {e}")
            result = WorkerResult(
                expert=expert,
                content=f"Error: {e}",
                status=WorkerStatus.ERROR,
            )
            if ledger is not None:
                ledger.record(f"worker_{expert.id}", prompt, "", elapsed_ms(t0), succeeded=False)

        result.execution_time_ms = elapsed_ms(t0)
        result.attempts = attempts
        logger.info(
            f"  [{expert.name}] {result.status.value} in {result.execution_time_ms}ms "
            f"({attempts} attempt(s))"
        )
        await publish(index, result)

    async def _submit_media(self, expert: ExpertProfile, prompt: str) -> MediaJob:
        if expert.type == ExpertType.VIDEO:
            return await self.media.submit_video(expert.model, prompt)
        return await self.media.submit_image(expert.model, prompt)

    async def _await_media(self, job: MediaJob) -> MediaJob:
        """Poll a submitted job until the backend reports completion, then fetch it."""
        polls = 0
        while not job.done:
            await self._sleep(self.poll_interval_seconds)
            job = await self.media.poll(job)
            polls += 1
            logger.debug(f"{job.kind} job on {job.model}: poll {polls}, done={job.done}")
        return await self.media.fetch(job)

    @staticmethod
    def _build_user_prompt(
        prompt: str,
        history: Sequence[ChatTurn],
        preferences: Optional[UserPreferences],
    ) -> str:
        prefs = active_preferences(preferences)
        memory = f"[CONTEXT: Act as {prefs.persona}, style: {prefs.style}] " if prefs else ""
        return join_sections(format_history(history), memory + prompt)


def extract_action_draft(content: str) -> Optional[ActionDraft]:
    """
    Best-effort parse of a fenced ```json action block.

    Returns None when there is no block, it is not valid JSON, or it is not
    a ``draft_action`` payload.
    """
    match = ACTION_BLOCK_RE.search(content)
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
        if not isinstance(data, dict) or data.get("action") != "draft_action":
            return None
        return ActionDraft.model_validate(data)
    except Exception as e:
        logger.debug(f"Ignoring unparseable action block: {e}")
        return None
