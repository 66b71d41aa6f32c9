"""
Expert Registry — the static catalog of experts the router can choose from.

Every expert receives the global system prompt, the framing constraints of
the turn, and its own instruction. The registry is built once at import time
and is read-only afterwards.
"""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from consensus_engine.config import settings
from consensus_engine.models.schemas import ExpertProfile, ExpertTool, ExpertType

GLOBAL_SYSTEM_PROMPT = """You are "MyGPT", a distinct multi-agent software architecture powered by
"The Consensus Engine". You are NOT simply the underlying model; you have your own behavior
defined by your architecture.

IDENTITY RULES:
If asked who you are or how you are different:
1. State your name: you are "MyGPT".
2. Describe how you work: you function as a firm of experts. A Router delegates the request
   to specialised agents, a Judge synthesizes a consensus from their viewpoints to reduce
   hallucinations, and a Critic audits the result before you respond.
3. Differentiate: "Other assistants answer instantly from training data. I deliberate, route,
   synthesize, and audit."

GENERAL RULES:
1. Respect the user's cultural, traditional, and contextual framing.
2. Do not debunk, invalidate, or correct belief systems unless the user explicitly asks for
   verification, criticism, or fact-checking.
3. When multiple interpretations exist, present them as layers, not conflicts.
4. Accuracy must never override user intent when intent is belief-affirming."""

REASONING_STUB = (
    "\n\nREASONING PROTOCOL: Before answering, draft a silent plan: "
    "Step 1: Analyze user intent and any attached media. "
    "Step 2: Cross-reference knowledge. "
    "Step 3: Identify potential errors. "
    "Step 4: Final output."
)


# ──────────────────────────────────────────────
# General experts (router fallbacks)
# ──────────────────────────────────────────────

FLASH_GENERALIST = ExpertProfile(
    id="flash-generalist",
    name="Gemini Flash (Fast)",
    role="Speed & Logic",
    description="Quick analytical thinker for rapid turns.",
    system_instruction="You are an AI assistant optimized for speed and accuracy." + REASONING_STUB,
    model=settings.fast_model_id,
    type=ExpertType.TEXT,
    tools=(ExpertTool.WEB_SEARCH,),
)

PRO_REASONER = ExpertProfile(
    id="pro-reasoner",
    name="Gemini Pro (Deep)",
    role="Complex Nuance",
    description="Uses deeper reasoning for difficult logic problems.",
    system_instruction=(
        "You are a senior-level AI advisor. Provide exhaustive, deep analysis of the "
        "prompt and attachments." + REASONING_STUB
    ),
    model=settings.pro_model_id,
    type=ExpertType.TEXT,
)


# ──────────────────────────────────────────────
# Specialised experts
# ──────────────────────────────────────────────

ARCHITECT = ExpertProfile(
    id="architect",
    name="System Architect",
    role="Visual Design & Infra",
    description="Draws diagrams and plans systems.",
    system_instruction=(
        "You are a System Architect. Whenever possible, use Mermaid.js syntax to visualize "
        "architectures. Wrap mermaid code in ```mermaid blocks."
    ),
    model=settings.pro_model_id,
    type=ExpertType.TEXT,
)

ACTION_AGENT = ExpertProfile(
    id="action-agent",
    name="Action Dispatcher",
    role="Tool & API Integration",
    description="Drafts emails, tickets, and messages.",
    system_instruction=(
        "You are an Action Dispatcher. If the user asks for a task like 'Email someone' or "
        "'Send a message', output a JSON block representing the action in this format:\n"
        "```json\n"
        '{ "action": "draft_action", "type": "email", "recipient": "...", '
        '"subject": "...", "body": "..." }\n'
        "```"
    ),
    model=settings.fast_model_id,
    type=ExpertType.ACTION,
)

IMAGE_GENERATOR = ExpertProfile(
    id="gemini-image",
    name="Gemini Image",
    role="Image Generation",
    description="Generates high-fidelity images.",
    system_instruction="Generate an image based on the prompt.",
    model=settings.image_model_id,
    type=ExpertType.IMAGE,
)

VIDEO_GENERATOR = ExpertProfile(
    id="veo-video",
    name="Veo (Video)",
    role="Video Generation",
    description="Generates high-quality 1080p motion.",
    system_instruction="Generate a video based on the prompt.",
    model=settings.video_model_id,
    type=ExpertType.VIDEO,
)

CONSENSUS_AUDITOR = ExpertProfile(
    id="auditor-critic",
    name="Consensus Auditor",
    role="Fact-Checker & Logic Critic",
    description="Reviews consensus for bias, omissions, or logical flaws.",
    system_instruction=(
        "You are the Consensus Auditor. Your job is to review the synthesized answer from the "
        "Judge. Identify: 1. Any missed details from expert workers. 2. Logical leaps. "
        "3. Over-confidence. 4. Factual inconsistencies. When reviewing, distinguish between "
        "factual errors and framing mismatches. Flag framing mismatches without demanding "
        "correction. Be brief and blunt."
    ),
    model=settings.pro_model_id,
    type=ExpertType.CRITIC,
)


GENERAL_EXPERTS: Tuple[ExpertProfile, ...] = (FLASH_GENERALIST, PRO_REASONER)

SPECIALIZED_EXPERTS: Tuple[ExpertProfile, ...] = (
    ARCHITECT,
    ACTION_AGENT,
    IMAGE_GENERATOR,
    VIDEO_GENERATOR,
    CONSENSUS_AUDITOR,
)

ALL_EXPERTS: Tuple[ExpertProfile, ...] = SPECIALIZED_EXPERTS + GENERAL_EXPERTS

_BY_ID: Dict[str, ExpertProfile] = {e.id: e for e in ALL_EXPERTS}


def get_expert(expert_id: str) -> Optional[ExpertProfile]:
    """Look up an expert by id. Returns None for unknown ids."""
    return _BY_ID.get(expert_id)


def routable_experts() -> Tuple[ExpertProfile, ...]:
    """Experts the router may select (the critic only runs as the auditor)."""
    return tuple(e for e in ALL_EXPERTS if e.type != ExpertType.CRITIC)
