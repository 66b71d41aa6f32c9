"""
Tool: Framing Classifier

Derives the cultural/epistemic framing of a request with a single structured
call on the fast model. Framing is advisory: any failure yields the default
profile and is never surfaced to the caller.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

from consensus_engine.config import settings
from consensus_engine.models.schemas import DEFAULT_FRAMING_PROFILE, FramingProfile
from consensus_engine.services.llm import LLMService
from consensus_engine.services.usage import UsageLedger, elapsed_ms

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a Framing Detection Agent.
Your task is NOT to answer the user.
Your task is to analyze the user's intent and cultural framing.

Output ONLY valid JSON. Do not explain. Do not add extra text.

Allowed Values:
domain: astrology, religion, culture, science, business, technology, personal, mixed
framingIntent: belief-affirming, educational-neutral, critical-analysis, storytelling, cultural-preservation
correctionTolerance: low, medium, high
authoritySource: tradition, scientific, experiential, textual, mixed
audienceType: general-public, devotional, academic, professional"""

FRAMING_PROMPT = """Analyze the following user input and produce a FramingProfile.

User Input:
{prompt}

Return JSON in this exact structure:
{{
  "domain": "",
  "framingIntent": "",
  "correctionTolerance": "",
  "authoritySource": "",
  "audienceType": ""
}}"""


class FramingClassifierTool:
    """Classifies the framing of a user prompt."""

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or LLMService()

    async def run(self, prompt: str, ledger: Optional[UsageLedger] = None) -> FramingProfile:
        """
        Classify the prompt.

        Returns:
            The detected FramingProfile, or DEFAULT_FRAMING_PROFILE on any failure
        """
        request = FRAMING_PROMPT.format(prompt=prompt)
        t0 = time.monotonic()
        try:
            profile = await self.llm.generate_structured(
                prompt=request,
                response_model=FramingProfile,
                system_prompt=SYSTEM_PROMPT,
                model=settings.fast_model_id,
                temperature=0.0,
                max_tokens=settings.structured_max_tokens,
                thinking_budget=settings.structured_thinking_budget,
            )
        except Exception as e:
            logger.warning(f"Framing detection failed ({type(e).__name__}: {e}), using default profile")
            if ledger is not None:
                ledger.record("framing", request, "", elapsed_ms(t0), succeeded=False)
            return DEFAULT_FRAMING_PROFILE

        if ledger is not None:
            ledger.record("framing", request, profile.model_dump_json(), elapsed_ms(t0))
        logger.info(
            f"Framing: {profile.domain.value} / {profile.framing_intent.value} "
            f"(tolerance {profile.correction_tolerance.value})"
        )
        return profile