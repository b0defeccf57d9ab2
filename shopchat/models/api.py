"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
The storefront widget speaks camelCase; fields carry aliases for it.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RequestType(str, Enum):
    """Usage log request type enumeration."""

    AI_CHAT = "AI_CHAT"
    KEYWORD_RESPONSE = "KEYWORD_RESPONSE"
    MANUAL_HANDOFF = "MANUAL_HANDOFF"


class MessageRole(str, Enum):
    """Durable message role enumeration."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MirrorSender(str, Enum):
    """Sender field of realtime mirror entries."""

    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class CustomerSource(str, Enum):
    """Where a customer record came from."""

    WEBSITE = "WEBSITE"
    SHOPIFY = "SHOPIFY"


class ProductSort(str, Enum):
    """Sort orders accepted by the product lookup tool."""

    RELEVANCE = "relevance"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    BEST_SELLING = "best_selling"
    NEWEST = "newest"


class StreamEventType(str, Enum):
    """Streaming event type enumeration."""

    TEXT = "text"
    METADATA = "metadata"
    ERROR = "error"


class CamelModel(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Chat Turn Models
# ============================================================================


class PreviewSettings(CamelModel):
    """Admin preview overrides - explicit fields, no dict."""

    tone: str | None = Field(None, max_length=100)
    language: str | None = Field(None, max_length=50)
    custom_instructions: str | None = Field(None, alias="customInstructions", max_length=4000)


class ChatTurnRequest(CamelModel):
    """POST /api/chat and /api/chat/async request body."""

    shop: str = Field(..., min_length=1, max_length=255)
    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=255)
    message: str = Field("", max_length=4000)
    email: str | None = Field(None, max_length=255)
    previous_session_id: str | None = Field(None, alias="previousSessionId", max_length=255)
    preview_settings: PreviewSettings | None = Field(None, alias="previewSettings")
    merge_only: bool = Field(False, alias="mergeOnly")

    @model_validator(mode="after")
    def require_message(self) -> "ChatTurnRequest":
        """A message is required unless the call only merges sessions."""
        if not self.merge_only and not self.message.strip():
            raise ValueError("message is required")
        return self


class ChatAcceptedResponse(BaseModel):
    """POST /api/chat/async response."""

    success: bool = True


class ErrorResponse(BaseModel):
    """Validation failure body used by the widget endpoints."""

    success: bool = False
    error: str


class ProductPayload(CamelModel):
    """Recommended product as sent to the widget."""

    id: str
    title: str = ""
    price: float = 0.0
    handle: str = ""
    image: str = ""
    score: float = 0.0


class StreamEvent(CamelModel):
    """One frame of the chat event stream."""

    type: StreamEventType
    content: str | None = None
    products: list[ProductPayload] | None = None
    handoff: bool | None = None
    session_id: str | None = Field(None, alias="sessionId")
    credits_remaining: int | None = Field(None, alias="creditsRemaining")

    def to_sse(self) -> str:
        """Serialize as a server-sent event frame."""
        payload = self.model_dump_json(by_alias=True, exclude_none=True)
        return f"data: {payload}\n\n"


# ============================================================================
# History Models
# ============================================================================


class HistoryMessage(CamelModel):
    """Stored message in the history response."""

    id: int
    role: MessageRole
    content: str
    created_at: datetime = Field(..., alias="createdAt")
    products: list[ProductPayload] = Field(default_factory=list)


class HistoryResponse(CamelModel):
    """GET /api/chat/history response."""

    success: bool = True
    session_id: str | None = Field(None, alias="sessionId")
    messages: list[HistoryMessage] = Field(default_factory=list)


# ============================================================================
# Summary Models
# ============================================================================


class SummaryRequest(CamelModel):
    """POST /api/summary request body."""

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=255)


class ConversationSummary(CamelModel):
    """Structured summary of a conversation for the merchant dashboard."""

    customer_name: str | None = Field(None, alias="customerName")
    overview: str
    intent: str
    sentiment: Literal["Positive", "Neutral", "Negative"] = "Neutral"
    sentiment_score: int = Field(50, alias="sentimentScore", ge=0, le=100)
    priority: Literal["Low", "Medium", "High"] = "Medium"
    tags: list[str] = Field(default_factory=list)
    key_quotes: list[str] = Field(default_factory=list, alias="keyQuotes")
    suggested_action: str = Field("", alias="suggestedAction")
    resolution_status: Literal["Escalated", "Requires Follow-up", "Informational"] = Field(
        "Informational", alias="resolutionStatus"
    )

    @classmethod
    def fallback(cls) -> "ConversationSummary":
        """Neutral summary returned when generation fails."""
        return cls(
            overview="Failed to generate summary.",
            intent="Error",
            sentiment="Neutral",
            sentiment_score=50,
            priority="Medium",
            tags=["Error"],
            key_quotes=[],
            suggested_action="Check logs for details.",
            resolution_status="Informational",
        )


class SummaryResponse(BaseModel):
    """POST /api/summary response."""

    success: bool = True
    summary: ConversationSummary


# ============================================================================
# Credit Models
# ============================================================================


class CreditsPayload(CamelModel):
    """Current period counters."""

    total: int
    used: int
    remaining: int
    period_start: datetime = Field(..., alias="periodStart")
    period_end: datetime = Field(..., alias="periodEnd")


class PlanPayload(CamelModel):
    """Plan the shop is subscribed to."""

    name: str
    monthly_credits: int = Field(..., alias="monthlyCredits")
    max_concurrent_chats: int = Field(..., alias="maxConcurrentChats")
    price: float
    features: dict[str, bool] = Field(default_factory=dict)


class SettingsPayload(CamelModel):
    """Merchant-controlled AI settings."""

    ai_enabled: bool = Field(..., alias="aiEnabled")
    auto_recharge: bool = Field(..., alias="autoRecharge")


class UsagePayload(CamelModel):
    """Rolling 30-day usage statistics."""

    total_requests: int = Field(..., alias="totalRequests")
    total_users: int = Field(..., alias="totalUsers")
    ai_chats: int = Field(..., alias="aiChats")
    keyword_responses: int = Field(..., alias="keywordResponses")
    handoffs: int
    total_tokens: int = Field(..., alias="totalTokens")
    average_response_time: int = Field(..., alias="averageResponseTime")
    success_rate: int = Field(..., alias="successRate")


class StatusPayload(CamelModel):
    """Availability as the admin UI shows it."""

    can_use_ai: bool = Field(..., alias="canUseAI")
    reason: str | None = None
    should_handoff: bool = Field(..., alias="shouldHandoff")


class CreditStatusResponse(CamelModel):
    """GET /api/credits response."""

    success: bool = True
    credits: CreditsPayload
    plan: PlanPayload
    settings: SettingsPayload
    usage: UsagePayload
    status: StatusPayload


class CreditActionRequest(CamelModel):
    """POST /api/credits request body."""

    action: str = Field(..., min_length=1, max_length=50)
    enabled: bool | None = None
    auto_recharge: bool | None = Field(None, alias="autoRecharge")


class CreditActionResponse(CamelModel):
    """POST /api/credits response."""

    success: bool = True
    message: str
    ai_enabled: bool | None = Field(None, alias="aiEnabled")


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "degraded", "unhealthy"]
    database: Literal["connected", "disconnected"]
    version: str
    timestamp: datetime
