"""
Single source of truth for all Pydantic models (requests, responses, SSE events, internal types).
Backend types live here; the frontend mirrors these definitions.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


# -----------------------------------------------------------------------------
# Analysis (external, read-only)
# -----------------------------------------------------------------------------


class AnalysisGap(BaseModel):
    title: str
    description: str = ""
    category: Optional[str] = None
    score: Optional[float] = None


class AnalysisCompetitor(BaseModel):
    name: str
    description: Optional[str] = None


class ActionPlanPhase(BaseModel):
    name: str
    description: Optional[str] = None


class ActionPlan(BaseModel):
    phases: list[ActionPlanPhase] = []


class Analysis(BaseModel):
    """The market-gap report a conversation is anchored to. Never mutated here."""
    id: str
    user_id: Optional[str] = None
    query: str
    parameters: dict[str, str] = {}
    innovation_score: Optional[float] = None
    feasibility_rating: Optional[str] = None
    gaps: list[AnalysisGap] = []
    competitors: list[AnalysisCompetitor] = []
    action_plan: Optional[ActionPlan] = None
    parent_analysis_id: Optional[str] = None
    status: str = "complete"
    created_at: Optional[datetime] = None


# -----------------------------------------------------------------------------
# Conversations & Messages
# -----------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class UserMessageMetadata(BaseModel):
    kind: Literal["user"] = "user"
    char_count: int = 0


class AssistantMessageMetadata(BaseModel):
    kind: Literal["assistant"] = "assistant"
    processing_time_ms: int = 0
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    provider: Optional[str] = None
    context_tokens: int = 0
    reanalysis_confidence: Optional[int] = None


MessageMetadata = Annotated[
    Union[UserMessageMetadata, AssistantMessageMetadata],
    Field(discriminator="kind"),
]


class Message(BaseModel):
    id: str
    conversation_id: str
    position: int
    role: Literal["user", "assistant"]
    content: str
    metadata: MessageMetadata
    created_at: datetime

    @model_validator(mode="before")
    @classmethod
    def default_metadata_kind(cls, data: object) -> object:
        """Rows written before metadata was tagged carry no 'kind'; infer it from the role."""
        if isinstance(data, dict):
            meta = data.get("metadata") or {}
            if isinstance(meta, dict) and "kind" not in meta:
                data = {**data, "metadata": {**meta, "kind": data.get("role", "user")}}
        return data


class Conversation(BaseModel):
    id: str
    analysis_id: str
    user_id: str
    variant_ids: list[str] = []
    created_at: datetime
    updated_at: datetime


class VariantLink(BaseModel):
    original_conversation_id: str
    variant_conversation_id: str
    variant_analysis_id: Optional[str] = None
    modified_parameters: dict[str, str] = {}
    created_at: Optional[datetime] = None


class SuggestedQuestion(BaseModel):
    text: str
    category: Literal["market_validation", "competitive_analysis", "execution_strategy", "risk_assessment"]
    priority: int


# -----------------------------------------------------------------------------
# Context Window
# -----------------------------------------------------------------------------


class TokenBudget(BaseModel):
    system_prompt: int
    analysis_context: int
    conversation_history: int
    current_query: int
    response_buffer: int


class ContextWindow(BaseModel):
    """Bounded prompt package handed to the completion backend."""
    system_prompt: str
    analysis_context: str
    conversation_history: str
    current_query: str
    total_tokens: int


# -----------------------------------------------------------------------------
# Quota
# -----------------------------------------------------------------------------


class QuotaStatus(BaseModel):
    allowed: bool
    remaining: int          # -1 when unlimited
    limit: int              # -1 when unlimited
    unlimited: bool = False
    tier: str = "free"


class RemainingQuestions(BaseModel):
    remaining: int
    limit: int
    unlimited: bool


# -----------------------------------------------------------------------------
# Variant Detection (LLM response model + results)
# -----------------------------------------------------------------------------


class ReanalysisDetection(BaseModel):
    is_reanalysis_request: bool = False
    confidence: int = Field(0, ge=0, le=100)
    modified_parameters: dict[str, str] = {}
    confirmation_prompt: Optional[str] = None
    reasoning: str = ""

    @model_validator(mode="before")
    @classmethod
    def clean_llm_output(cls, data: object) -> object:
        """Accept camelCase keys from the LLM, clamp confidence, drop empty parameters."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        aliases = {
            "isReanalysisRequest": "is_reanalysis_request",
            "modifiedParameters": "modified_parameters",
            "confirmationPrompt": "confirmation_prompt",
        }
        for camel, snake in aliases.items():
            if camel in data and snake not in data:
                data[snake] = data.pop(camel)
        try:
            data["confidence"] = max(0, min(100, int(float(data.get("confidence") or 0))))
        except (TypeError, ValueError):
            data["confidence"] = 0
        params = data.get("modified_parameters") or {}
        if isinstance(params, dict):
            data["modified_parameters"] = {
                _snake_case(str(k)): str(v).strip()
                for k, v in params.items()
                if isinstance(v, str) and v.strip()
            }
        else:
            data["modified_parameters"] = {}
        return data


def _snake_case(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out).lstrip("_")


class VariantProposal(BaseModel):
    """Surfaced to the user when detection confidence clears the threshold."""
    confidence: int
    modified_parameters: dict[str, str]
    modified_query: str
    confirmation_prompt: str


class HistorySummary(BaseModel):
    """LLM summarizer response model."""
    summary: str
    key_points: list[str] = []


# -----------------------------------------------------------------------------
# Input Safety
# -----------------------------------------------------------------------------


Severity = Literal["low", "medium", "high", "critical"]


class InjectionCheck(BaseModel):
    is_injection: bool
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    detected_patterns: list[str] = []
    severity: Severity = "low"


class ModerationResult(BaseModel):
    approved: bool
    severity: Severity = "low"
    categories: list[str] = []
    requires_review: bool = False


# -----------------------------------------------------------------------------
# Variant Comparison (LLM response model)
# -----------------------------------------------------------------------------


class KeyDifference(BaseModel):
    aspect: str
    original: str = "N/A"
    variant: str = "N/A"
    impact: Literal["positive", "negative", "neutral"] = "neutral"

    @model_validator(mode="before")
    @classmethod
    def coerce_fields(cls, data: object) -> object:
        """Stringify values and map unknown impacts to neutral."""
        if not isinstance(data, dict):
            return data
        data = {k: v for k, v in data.items() if v is not None}
        for key in ("aspect", "original", "variant"):
            if key in data:
                data[key] = str(data[key])
        if data.get("impact") not in ("positive", "negative", "neutral"):
            data["impact"] = "neutral"
        return data


class VariantComparison(BaseModel):
    summary: str = "Comparison analysis completed"
    key_differences: list[KeyDifference] = []
    recommendations: list[str] = []
    preferred_variant: Optional[Literal["original", "variant", "both"]] = None
    reasoning: str = "Both variants offer unique opportunities"

    @model_validator(mode="before")
    @classmethod
    def clean_llm_output(cls, data: object) -> object:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for camel, snake in (("keyDifferences", "key_differences"), ("preferredVariant", "preferred_variant")):
            if camel in data and snake not in data:
                data[snake] = data.pop(camel)
        if data.get("preferred_variant") not in ("original", "variant", "both"):
            data["preferred_variant"] = None
        data["recommendations"] = [str(r) for r in data.get("recommendations") or []]
        return data


# -----------------------------------------------------------------------------
# Message Feedback
# -----------------------------------------------------------------------------


ReportCategory = Literal["inappropriate", "inaccurate", "harmful", "spam", "other"]


class MessageFeedback(BaseModel):
    id: str
    message_id: str
    user_id: str
    kind: Literal["rating", "report"]
    rating: Optional[int] = None
    category: Optional[ReportCategory] = None
    reason: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000, description="User's question")


class DetectRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class VariantRequest(BaseModel):
    modified_parameters: dict[str, str] = Field(..., min_length=1)


class ExportRequest(BaseModel):
    format: Literal["pdf", "markdown", "json"]
    include_analysis: bool = True


class RateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=500)


class ReportRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    category: ReportCategory
    details: Optional[str] = Field(None, max_length=1000)


# -----------------------------------------------------------------------------
# SSE Event Models
# -----------------------------------------------------------------------------


class TurnStartedEvent(BaseModel):
    type: str = "turn_started"
    conversation_id: str
    message: Message
    quota: QuotaStatus


class AssistantMessageEvent(BaseModel):
    type: str = "assistant_message"
    message: Message


class VariantProposedEvent(BaseModel):
    type: str = "variant_proposed"
    proposal: VariantProposal


class SuggestionsEvent(BaseModel):
    type: str = "suggestions"
    suggestions: list[SuggestedQuestion]


class TurnCompleteEvent(BaseModel):
    type: str = "turn_complete"
    conversation_id: str
    quota: RemainingQuestions


class ErrorEvent(BaseModel):
    type: str = "error"
    message: str
    recoverable: bool
    error_code: str


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------


class TurnResult(BaseModel):
    conversation: Conversation
    user_message: Message
    assistant_message: Message
    quota: QuotaStatus
    variant_proposal: Optional[VariantProposal] = None
    suggestions: list[SuggestedQuestion] = []


class VariantBranch(BaseModel):
    variant_analysis: Analysis
    variant_conversation: Conversation
    link: VariantLink


class DetectionResponse(BaseModel):
    detection: ReanalysisDetection
    proposal: Optional[VariantProposal] = None


class ComparisonResponse(BaseModel):
    original_analysis_id: str
    variant_analysis_id: str
    comparison: VariantComparison
    formatted: str


class ConversationDetailResponse(BaseModel):
    conversation: Conversation
    messages: list[Message]
    suggestions: list[SuggestedQuestion]
    quota: RemainingQuestions


class ExportResult(BaseModel):
    format: str
    filename: str
    mime_type: str
    content: Union[str, bytes]
    url: Optional[str] = None
