"""
Domain models for the Consensus Engine.

These Pydantic models define the structured data flowing through the consensus
pipeline: expert definitions, the framing profile, per-expert worker results,
and the chat turn / session records the state machine mutates.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class ExpertType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    ACTION = "action"
    CRITIC = "critic"


class ExpertTool(str, Enum):
    WEB_SEARCH = "web_search"


class WorkerStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class TurnStage(str, Enum):
    FRAMING = "framing"
    ROUTING = "routing"
    GATHERING = "gathering"
    JUDGING = "judging"
    CRITICIZING = "criticizing"
    COMPLETE = "complete"
    ERROR = "error"


class Domain(str, Enum):
    ASTROLOGY = "astrology"
    RELIGION = "religion"
    CULTURE = "culture"
    SCIENCE = "science"
    BUSINESS = "business"
    TECHNOLOGY = "technology"
    PERSONAL = "personal"
    MIXED = "mixed"


class FramingIntent(str, Enum):
    BELIEF_AFFIRMING = "belief-affirming"
    EDUCATIONAL_NEUTRAL = "educational-neutral"
    CRITICAL_ANALYSIS = "critical-analysis"
    STORYTELLING = "storytelling"
    CULTURAL_PRESERVATION = "cultural-preservation"


class CorrectionTolerance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuthoritySource(str, Enum):
    TRADITION = "tradition"
    SCIENTIFIC = "scientific"
    EXPERIENTIAL = "experiential"
    TEXTUAL = "textual"
    MIXED = "mixed"


class AudienceType(str, Enum):
    GENERAL_PUBLIC = "general-public"
    DEVOTIONAL = "devotional"
    ACADEMIC = "academic"
    PROFESSIONAL = "professional"


class ActionType(str, Enum):
    EMAIL = "email"
    TICKET = "ticket"
    MESSAGE = "message"
    CALENDAR = "calendar"


# ──────────────────────────────────────────────
# Expert Registry Models
# ──────────────────────────────────────────────

class ExpertProfile(BaseModel):
    """One configured backend persona/model combination. Never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    role: str
    description: str
    system_instruction: str
    model: str
    type: ExpertType = ExpertType.TEXT
    tools: Tuple[ExpertTool, ...] = ()


# ──────────────────────────────────────────────
# Framing Models
# ──────────────────────────────────────────────

class FramingProfile(BaseModel):
    """
    Cultural/epistemic stance of a request. Produced once per turn by the
    framing classifier and passed read-only to every later stage.

    The model emits camelCase keys, so the aliases are the wire names.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    domain: Domain = Field(..., description="Subject domain of the request")
    framing_intent: FramingIntent = Field(
        ..., alias="framingIntent", description="What the user wants the answer to do"
    )
    correction_tolerance: CorrectionTolerance = Field(
        ..., alias="correctionTolerance", description="How welcome corrective statements are"
    )
    authority_source: AuthoritySource = Field(
        ..., alias="authoritySource", description="Primary reference lens"
    )
    audience_type: AudienceType = Field(
        ..., alias="audienceType", description="Who the answer is for"
    )

    @field_validator(
        "domain", "framing_intent", "correction_tolerance",
        "authority_source", "audience_type", mode="before",
    )
    @classmethod
    def _normalise(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def is_belief_affirming(self) -> bool:
        return (
            self.framing_intent == FramingIntent.BELIEF_AFFIRMING
            or self.correction_tolerance == CorrectionTolerance.LOW
        )


DEFAULT_FRAMING_PROFILE = FramingProfile(
    domain=Domain.MIXED,
    framing_intent=FramingIntent.EDUCATIONAL_NEUTRAL,
    correction_tolerance=CorrectionTolerance.MEDIUM,
    authority_source=AuthoritySource.MIXED,
    audience_type=AudienceType.GENERAL_PUBLIC,
)


# ──────────────────────────────────────────────
# Worker Models
# ──────────────────────────────────────────────

class ActionDraft(BaseModel):
    """A structured action (e.g. an email) extracted from an expert's text."""
    type: ActionType
    recipient: Optional[str] = None
    subject: Optional[str] = None
    body: str
    platform: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, v: str) -> str:
        return v.lower() if isinstance(v, str) else v


class GroundingCitation(BaseModel):
    title: str = ""
    uri: str


class WorkerResult(BaseModel):
    """Outcome of one expert's call for a turn."""
    expert: ExpertProfile
    content: str = ""
    images: List[str] = Field(default_factory=list, description="Base64-encoded images")
    video_uri: Optional[str] = None
    status: WorkerStatus = WorkerStatus.PENDING
    execution_time_ms: Optional[int] = None
    estimated_tokens: Optional[int] = None
    grounding_urls: List[GroundingCitation] = Field(default_factory=list)
    requires_key_selection: bool = Field(
        False, description="Set when a media credential must be configured first"
    )
    action_draft: Optional[ActionDraft] = None
    attempts: int = 0


# ──────────────────────────────────────────────
# Conversation Models
# ──────────────────────────────────────────────

class FileAttachment(BaseModel):
    name: str
    mime_type: str
    data: str = Field(..., description="Base64-encoded file content")


class UserPreferences(BaseModel):
    persona: str = "Professional Consultant"
    style: str = "Logical & Structured"
    technical_context: str = "General knowledge"
    memory_enabled: bool = True


class ChatTurn(BaseModel):
    """One user request and its full pipeline execution."""
    id: str
    user_prompt: str
    attachments: List[FileAttachment] = Field(default_factory=list)
    step: TurnStage = TurnStage.FRAMING
    framing_profile: Optional[FramingProfile] = None
    selected_experts: List[ExpertProfile] = Field(default_factory=list)
    worker_results: List[WorkerResult] = Field(default_factory=list)
    consensus_content: str = ""
    critic_content: Optional[str] = None
    total_tokens: int = 0
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    preferences_at_time: Optional[UserPreferences] = None

    @property
    def is_terminal(self) -> bool:
        return self.step in (TurnStage.COMPLETE, TurnStage.ERROR)


DEFAULT_SESSION_TITLE = "New Conversation"


class ChatSession(BaseModel):
    id: str
    title: str = DEFAULT_SESSION_TITLE
    turns: List[ChatTurn] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)

    def refresh_title(self) -> None:
        """Derive the title from the first prompt while it is still the default."""
        if self.title == DEFAULT_SESSION_TITLE and self.turns:
            self.title = self.turns[0].user_prompt[:30] + "..."


# ──────────────────────────────────────────────
# API Request / Response Models
# ──────────────────────────────────────────────

class TurnSubmission(BaseModel):
    """API request to submit a new prompt to a session."""
    prompt: str = ""
    attachments: List[FileAttachment] = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_content(self) -> "TurnSubmission":
        if not self.prompt.strip() and not self.attachments:
            raise ValueError("A prompt or at least one attachment is required")
        return self


class TurnResponse(BaseModel):
    session_id: str
    turn_id: str
    status: str
    message: str


class SessionSummary(BaseModel):
    id: str
    title: str
    turn_count: int
    updated_at: datetime


class ConsensusDisplay(BaseModel):
    """Judge output split into its confidence marker and visible text."""
    confidence: Optional[str] = None
    content: str = ""
