"""
Tool: Judge Synthesizer

Streams one synthesized answer from the successful worker outputs. This is
the capstone of the pipeline: it applies the framing policy, surfaces expert
divergence explicitly, and opens with a machine-parseable confidence marker
that `extract_confidence()` strips for display.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from consensus_engine.agent.experts import GLOBAL_SYSTEM_PROMPT
from consensus_engine.config import settings
from consensus_engine.models.schemas import (
    ChatTurn,
    ConsensusDisplay,
    ExpertType,
    FramingProfile,
    UserPreferences,
    WorkerResult,
    WorkerStatus,
)
from consensus_engine.services.llm import LLMService
from consensus_engine.services.usage import UsageLedger, elapsed_ms, estimate_tokens
from consensus_engine.tools.context import (
    active_preferences,
    format_history,
    framing_json,
    join_sections,
)

logger = logging.getLogger(__name__)

StreamChunkHandler = Callable[[str], Awaitable[None]]

NO_VALID_RESPONSES = (
    "**Confidence: Low**\n\n"
    "No valid responses were received from the expert panel, so no consensus "
    "could be synthesized. Please retry your request."
)

SYNTHESIS_ERROR = "\n\n*Synthesis Error: the answer stream was interrupted. Please retry.*"

CONFIDENCE_RE = re.compile(
    r"\*{0,2}Confidence:\s*\*{0,2}\s*(High|Medium|Med|Low)\b\*{0,2}",
    re.IGNORECASE,
)

JUDGE_ROLE = """You are the Synthesis Judge.

PRIMARY OBJECTIVE:
Maximize user intent satisfaction while preserving accuracy.

DECISION RULES:
1. If experts disagree on substance, do NOT silently pick a side. Surface the
   disagreement in a "### Points of Divergence" section naming which experts hold which view.
2. Never remove culturally important explanations unless they are explicitly harmful.
3. Prefer layered explanations over contradiction.
4. VISUALS: If architecture is discussed, you MUST use Mermaid.js diagrams.
5. MEDIA: If an expert generated an image or a video, say so explicitly and tell the user
   it is shown in that expert's panel of the Expert Deliberation section.
6. Your FIRST line must be exactly `Confidence: High`, `Confidence: Medium` or `Confidence: Low`."""

ADDITIVE_POLICY = """FRAMING POLICY (belief-affirming / low correction tolerance):
- Cultural/traditional authority wins when experts disagree on interpretation.
- Do not use a corrective or debunking tone.
- Any scientific or technical nuance goes ONLY in the optional context section,
  phrased as an additive layer, never as a correction.

FORMAT:
Confidence: [High/Medium/Low]

### Primary Explanation (User's Worldview)
[Content completely aligned with the user's framing intent]

### Optional Context (If Applicable)
[Additional perspectives presented as an additive layer]"""

STANDARD_POLICY = """FRAMING POLICY:
- Accuracy and the user's stated intent both matter; correct factual errors plainly but respectfully.
- Use the framing's authority source as the primary reference lens.

FORMAT:
Confidence: [High/Medium/Low]

### Answer
[The synthesized answer]

### Points of Divergence (only if experts disagreed)
[Each disagreement and who holds which position]"""


class JudgeSynthesizerTool:
    """Synthesizes worker outputs into one streamed answer."""

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or LLMService()

    async def run(
        self,
        prompt: str,
        results: Sequence[WorkerResult],
        history: Sequence[ChatTurn] = (),
        preferences: Optional[UserPreferences] = None,
        framing: Optional[FramingProfile] = None,
        on_chunk: Optional[StreamChunkHandler] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> int:
        """
        Stream the consensus answer through ``on_chunk``.

        Returns:
            Token estimate of everything that was streamed
        """
        async def emit(fragment: str) -> None:
            if on_chunk:
                await on_chunk(fragment)

        successful = [r for r in results if r.status == WorkerStatus.SUCCESS]
        if not successful:
            logger.warning("Judge skipped: no successful worker results")
            await emit(NO_VALID_RESPONSES)
            return 0

        system_prompt = self.build_system_prompt(framing, preferences)
        user_prompt = join_sections(
            format_history(history),
            f"User Prompt: {prompt}",
            "Expert Deliberation:\n" + format_worker_inputs(successful),
        )

        streamed: List[str] = []
        t0 = time.monotonic()
        try:
            async for fragment in self.llm.stream(
                user_prompt,
                system_prompt=system_prompt,
                model=settings.pro_model_id,
                thinking_budget=settings.judge_thinking_budget,
            ):
                streamed.append(fragment)
                await emit(fragment)
        except Exception as e:
            # Whatever already streamed stays; the turn still completes
            logger.error(f"Judge stream failed after {len(streamed)} fragment(s): {e}")
            await emit(SYNTHESIS_ERROR)
            if ledger is not None:
                ledger.record("judge", system_prompt + user_prompt, "".join(streamed), elapsed_ms(t0), succeeded=False)
            return estimate_tokens("".join(streamed))

        text = "".join(streamed)
        if ledger is not None:
            ledger.record("judge", system_prompt + user_prompt, text, elapsed_ms(t0))
        logger.info(f"Judge synthesis complete ({len(streamed)} fragments, {len(text)} chars)")
        return estimate_tokens(text)

    @staticmethod
    def build_system_prompt(
        framing: Optional[FramingProfile],
        preferences: Optional[UserPreferences],
    ) -> str:
        framing_text = framing_json(framing)
        prefs = active_preferences(preferences)
        policy = ADDITIVE_POLICY if framing and framing.is_belief_affirming else STANDARD_POLICY
        return join_sections(
            GLOBAL_SYSTEM_PROMPT,
            f"CONTEXTUAL FRAMING:\n{framing_text}" if framing_text else "",
            JUDGE_ROLE,
            f"STYLE: Role: {prefs.persona}, Style: {prefs.style}." if prefs else "",
            policy,
        )


def format_worker_inputs(results: Sequence[WorkerResult]) -> str:
    """Render successful results as judge input; media results become a note."""
    sections = []
    for r in results:
        if r.expert.type == ExpertType.IMAGE:
            body = (
                f"{r.content} ({len(r.images)} image(s) generated; shown in the "
                f"'{r.expert.name}' panel of the expert deliberation)"
            )
        elif r.expert.type == ExpertType.VIDEO:
            body = f"{r.content} (video available in the '{r.expert.name}' panel: {r.video_uri})"
        else:
            body = r.content
            if r.action_draft:
                body += f"\n(Drafted {r.action_draft.type.value} ready for the user to send.)"
        sections.append(f"[{r.expert.name}]: {body}")
    return "\n\n".join(sections)


def extract_confidence(content: str) -> Tuple[Optional[str], str]:
    """
    Split the confidence marker off a synthesized answer.

    Returns:
        (HIGH | MEDIUM | LOW or None, the text without the marker)
    """
    if not content:
        return None, ""
    match = CONFIDENCE_RE.search(content)
    if not match:
        return None, content.strip()
    level = match.group(1).upper()
    if level == "MED":
        level = "MEDIUM"
    cleaned = (content[: match.start()] + content[match.end():]).strip()
    return level, cleaned


def to_display(content: str) -> ConsensusDisplay:
    confidence, cleaned = extract_confidence(content)
    return ConsensusDisplay(confidence=confidence, content=cleaned)
