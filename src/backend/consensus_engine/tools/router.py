"""
Tool: Expert Router

Selects which experts to consult for a turn. A fast model ranks the registry
against the prompt; the result is mapped back onto registry entries
deterministically. Routing failures fall back to a fixed generalist set and
are never surfaced to the caller.
"""
from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from consensus_engine.agent.experts import (
    FLASH_GENERALIST,
    GENERAL_EXPERTS,
    GLOBAL_SYSTEM_PROMPT,
    get_expert,
    routable_experts,
)
from consensus_engine.config import settings
from consensus_engine.models.schemas import (
    ChatTurn,
    ExpertProfile,
    ExpertType,
    FileAttachment,
    FramingProfile,
    UserPreferences,
)
from consensus_engine.services.llm import LLMService
from consensus_engine.services.retry import is_rate_limit_error
from consensus_engine.services.usage import UsageLedger, elapsed_ms
from consensus_engine.tools.context import (
    format_history,
    format_preferences,
    framing_json,
    join_sections,
)

logger = logging.getLogger(__name__)

ROUTING_HEURISTICS = """ROUTING RULES:
- If the user asks for a video or animation, you MUST include the video expert.
- If the user asks to draw, paint or generate an image, you MUST include the image expert.
- If the user asks to email, message, ticket or schedule something, include the action expert.
- If the request involves architecture, infrastructure or diagrams, include the architect.
- Always include at least one generalist text expert.
- Select between 2 and {max_experts} experts. Never invent ids."""

ROUTER_PROMPT = """User Prompt: "{prompt}"
Attachments: {attachment_count} file(s) attached.

{context}

Available Experts:
{expert_list}

{heuristics}

Task:
Select the experts most suited for this specific query, best first.
Return JSON only: {{ "selectedIds": ["id1", "id2"], "reasoning": "..." }}"""


class RoutingDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selected_ids: List[str] = Field(default_factory=list, alias="selectedIds")
    reasoning: str = ""


class ExpertRouterTool:
    """Chooses an ordered, non-empty list of experts for a prompt."""

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or LLMService()

    async def run(
        self,
        prompt: str,
        attachments: Sequence[FileAttachment] = (),
        history: Sequence[ChatTurn] = (),
        preferences: Optional[UserPreferences] = None,
        framing: Optional[FramingProfile] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> List[ExpertProfile]:
        """
        Route a prompt to experts.

        Returns:
            Experts in selection order; never empty
        """
        request = self._build_prompt(prompt, attachments, history, preferences, framing)
        t0 = time.monotonic()
        try:
            decision = await self.llm.generate_structured(
                prompt=request,
                response_model=RoutingDecision,
                system_prompt=GLOBAL_SYSTEM_PROMPT,
                model=settings.fast_model_id,
                temperature=0.0,
                max_tokens=settings.structured_max_tokens,
                thinking_budget=settings.structured_thinking_budget,
            )
        except Exception as e:
            degraded = settings.degraded_mode or is_rate_limit_error(e)
            logger.warning(
                f"Routing failed ({type(e).__name__}: {e}), using "
                f"{'degraded single-expert' if degraded else 'default'} fallback"
            )
            if ledger is not None:
                ledger.record("routing", request, "", elapsed_ms(t0), succeeded=False)
            return self.fallback(degraded)

        if ledger is not None:
            ledger.record("routing", request, decision.model_dump_json(), elapsed_ms(t0))

        experts = self.resolve(decision.selected_ids)
        if not experts:
            logger.warning(f"Router selected no known experts ({decision.selected_ids}), using fallback")
            return self.fallback(settings.degraded_mode)

        if settings.degraded_mode:
            experts = experts[:1]
        if settings.privacy_mode:
            logger.info(f"Routed to {[e.id for e in experts]}")
        else:
            logger.info(f"Routed to {[e.id for e in experts]}: {decision.reasoning[:120]}")
        return experts

    @staticmethod
    def resolve(selected_ids: Sequence[str]) -> List[ExpertProfile]:
        """
        Map selected ids onto routable registry entries.

        Unknown ids are dropped, duplicates keep their first position, and
        the list is capped at the configured maximum.
        """
        experts: List[ExpertProfile] = []
        seen = set()
        for expert_id in selected_ids:
            if not isinstance(expert_id, str):
                continue
            expert = get_expert(expert_id.strip())
            if expert is None or expert.type == ExpertType.CRITIC or expert.id in seen:
                continue
            seen.add(expert.id)
            experts.append(expert)
        return experts[: settings.router_max_experts]

    @staticmethod
    def fallback(degraded: bool = False) -> List[ExpertProfile]:
        # A saturated backend should not be hit with more parallel calls
        if degraded:
            return [FLASH_GENERALIST]
        return list(GENERAL_EXPERTS)

    @staticmethod
    def _build_prompt(
        prompt: str,
        attachments: Sequence[FileAttachment],
        history: Sequence[ChatTurn],
        preferences: Optional[UserPreferences],
        framing: Optional[FramingProfile],
    ) -> str:
        expert_list = "\n".join(
            f"- ID: {e.id} | Name: {e.name} | Role: {e.role} | {e.description}"
            for e in routable_experts()
        )
        framing_text = framing_json(framing)
        context = join_sections(
            format_preferences(preferences),
            (
                "Framing Context (DO NOT OVERRIDE):\n" + framing_text
                + "\nRouting decision must respect the framing context."
            ) if framing_text else "",
            format_history(history),
        )
        return ROUTER_PROMPT.format(
            prompt=prompt,
            attachment_count=len(attachments),
            context=context,
            expert_list=expert_list,
            heuristics=ROUTING_HEURISTICS.format(max_experts=settings.router_max_experts),
        )