"""
Tool: Critic Auditor

Post-hoc review of the synthesized answer against the worker outputs. By the
time it runs the answer is already final and visible, so audit failures are
replaced with a placeholder instead of failing the turn.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from consensus_engine.agent.experts import CONSENSUS_AUDITOR, GLOBAL_SYSTEM_PROMPT
from consensus_engine.models.schemas import FramingProfile, WorkerResult, WorkerStatus
from consensus_engine.services.llm import LLMService
from consensus_engine.services.usage import UsageLedger, elapsed_ms, estimate_tokens
from consensus_engine.tools.context import framing_json, join_sections

logger = logging.getLogger(__name__)

AUDITOR_UNAVAILABLE = "Auditor unavailable."
NO_AUDIT_NOTES = "No audit notes recorded."

CRITIC_PROMPT = """User Request: "{prompt}"

Deliberation History:
{expert_inputs}

Current Consensus Synthesis:
{consensus}

Task:
Perform an audit of the Synthesis. Point out if it missed any specific worker advice,
contains logical errors, is overconfident, or seems too generic."""


@dataclass
class CriticReview:
    text: str
    tokens: int


class CriticAuditorTool:
    """Audits the judge's answer with the Consensus Auditor expert."""

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or LLMService()
        self.expert = CONSENSUS_AUDITOR

    async def run(
        self,
        prompt: str,
        results: Sequence[WorkerResult],
        consensus: str,
        framing: Optional[FramingProfile] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> CriticReview:
        expert_inputs = "\n\n".join(
            f"[{r.expert.name}]: {r.content}"
            for r in results
            if r.status == WorkerStatus.SUCCESS
        ) or "(no successful expert outputs)"
        request = CRITIC_PROMPT.format(
            prompt=prompt,
            expert_inputs=expert_inputs,
            consensus=consensus,
        )
        framing_text = framing_json(framing)
        system_prompt = join_sections(
            GLOBAL_SYSTEM_PROMPT,
            f"CONTEXTUAL FRAMING:\n{framing_text}" if framing_text else "",
            self.expert.system_instruction,
        )

        t0 = time.monotonic()
        try:
            text = await self.llm.generate(
                request,
                system_prompt=system_prompt,
                model=self.expert.model,
                temperature=0.3,
            )
        except Exception as e:
            logger.warning(f"Critic audit failed ({type(e).__name__}: {e})")
            if ledger is not None:
                ledger.record("critic", system_prompt + request, "", elapsed_ms(t0), succeeded=False)
            return CriticReview(text=AUDITOR_UNAVAILABLE, tokens=0)

        text = text.strip() or NO_AUDIT_NOTES
        if ledger is not None:
            ledger.record("critic", system_prompt + request, text, elapsed_ms(t0))
        return CriticReview(text=text, tokens=estimate_tokens(text))
