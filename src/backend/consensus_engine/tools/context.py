"""
Prompt-context helpers shared by the pipeline tools.

Formats the conversation history window, the user's preferences, and the
framing profile into prompt text.
"""
from __future__ import annotations

import json
from typing import Optional, Sequence

from consensus_engine.config import settings
from consensus_engine.models.schemas import (
    ChatTurn,
    FramingProfile,
    TurnStage,
    UserPreferences,
)


def history_window(history: Sequence[ChatTurn], size: Optional[int] = None) -> Sequence[ChatTurn]:
    """The trailing completed turns that fit in the context window."""
    size = settings.history_window if size is None else size
    if size <= 0:
        return ()
    completed = [t for t in history if t.step == TurnStage.COMPLETE]
    return tuple(completed[-size:])


def format_history(history: Sequence[ChatTurn], size: Optional[int] = None) -> str:
    turns = history_window(history, size)
    if not turns:
        return ""
    lines = ["CONVERSATION HISTORY (most recent last):"]
    for turn in turns:
        lines.append(f"User: {turn.user_prompt}")
        lines.append(f"Assistant: {turn.consensus_content[:1500]}")
    return "\n".join(lines)


def active_preferences(preferences: Optional[UserPreferences]) -> Optional[UserPreferences]:
    if preferences is None or not preferences.memory_enabled:
        return None
    return preferences


def format_preferences(preferences: Optional[UserPreferences]) -> str:
    prefs = active_preferences(preferences)
    if not prefs:
        return ""
    return (
        "USER PREFERENCES (Persistent Memory):\n"
        f"- Role: {prefs.persona}\n"
        f"- Style: {prefs.style}\n"
        f"- Context: {prefs.technical_context}"
    )


def framing_json(framing: Optional[FramingProfile]) -> str:
    if not framing:
        return ""
    return json.dumps(framing.model_dump(mode="json", by_alias=True), indent=2)


def framing_constraints(framing: Optional[FramingProfile]) -> str:
    """Worker-facing framing prefix."""
    if not framing:
        return ""
    return (
        "FRAMING CONSTRAINTS:\n"
        f"- Domain: {framing.domain.value}\n"
        f"- Intent: {framing.framing_intent.value}\n"
        f"- Correction Tolerance: {framing.correction_tolerance.value}\n"
        f"- Authority Source: {framing.authority_source.value}\n"
        f"- Audience: {framing.audience_type.value}\n"
        "\n"
        "RULES:\n"
        "- Do not challenge belief systems if correctionTolerance is LOW.\n"
        "- Use the authoritySource as the primary reference lens.\n"
        "- Match tone and structure to the audienceType.\n"
        "- Additive explanations are allowed; dismissive corrections are not."
    )


def join_sections(*sections: str) -> str:
    return "\n\n".join(s for s in sections if s)
