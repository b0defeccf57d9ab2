"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from shopchat.models.api import MessageRole, PreviewSettings, RequestType

GUEST_IDENTITY = "guest"


# ============================================================================
# Credit Ledger Models
# ============================================================================


@dataclass(frozen=True)
class CreditAvailability:
    """Result of an availability check - a denial is data, not an exception."""

    allowed: bool
    remaining: int
    reason: str | None = None
    should_handoff: bool = False

    def __post_init__(self) -> None:
        """Validate availability constraints."""
        if self.remaining < 0:
            raise ValueError(f"Remaining credits cannot be negative: {self.remaining}")
        if not self.allowed and not self.reason:
            raise ValueError("A denial must carry a reason")


@dataclass(frozen=True)
class UsageMetrics:
    """Outcome of one processed request, as recorded in the usage log."""

    request_type: RequestType
    credits_used: int
    was_successful: bool
    response_time_ms: int | None = None
    tokens_used: int | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        """Validate usage constraints."""
        if self.credits_used < 0:
            raise ValueError(f"Credits used cannot be negative: {self.credits_used}")


@dataclass(frozen=True)
class PlanData:
    """Immutable plan snapshot."""

    name: str
    monthly_credits: int
    max_concurrent_chats: int
    price: float
    features: dict[str, bool]


@dataclass(frozen=True)
class UsageStats:
    """Rolling usage statistics over recent logs."""

    ai_chats: int = 0
    keyword_responses: int = 0
    handoffs: int = 0
    total_tokens: int = 0
    average_response_time: int = 0
    success_rate: int = 0


@dataclass(frozen=True)
class CreditStatus:
    """Everything the merchant credit page shows."""

    shop: str
    total_credits: int
    used_credits: int
    remaining_credits: int
    period_start: datetime
    period_end: datetime
    plan: PlanData
    ai_enabled: bool
    auto_recharge: bool
    total_requests: int
    total_users: int
    usage: UsageStats
    availability: CreditAvailability


# ============================================================================
# Session Store Models
# ============================================================================


@dataclass(frozen=True)
class ProductSnapshot:
    """Product as recommended with an assistant message."""

    product_id: str
    title: str = ""
    price: float = 0.0
    handle: str = ""
    image: str = ""
    score: float = 0.0


@dataclass(frozen=True)
class StoredMessage:
    """Durable message with its product snapshots."""

    message_id: int
    role: MessageRole
    content: str
    created_at: datetime
    products: tuple[ProductSnapshot, ...] = ()


@dataclass(frozen=True)
class SessionData:
    """Chat session with its ordered history."""

    session_id: str
    shop: str
    customer_id: UUID | None
    is_guest: bool
    created_at: datetime
    messages: tuple[StoredMessage, ...] = ()


@dataclass(frozen=True)
class ResolvedSession:
    """Session chosen for a turn plus the customer it belongs to."""

    session: SessionData
    customer_id: UUID | None


# ============================================================================
# Turn Models
# ============================================================================


@dataclass(frozen=True)
class TurnRequest:
    """One inbound chat turn."""

    shop: str
    session_id: str
    message: str
    email: str | None = None
    previous_session_id: str | None = None
    preview: PreviewSettings | None = None
    merge_only: bool = False

    def __post_init__(self) -> None:
        """Validate turn request fields."""
        if not self.shop:
            raise ValueError("shop cannot be empty")
        if not self.session_id:
            raise ValueError("session_id cannot be empty")

    @property
    def identity(self) -> str:
        """Email when known, the guest sentinel otherwise."""
        return self.email or GUEST_IDENTITY

    @property
    def needs_migration(self) -> bool:
        """True when a guest conversation should move to this session."""
        return bool(
            self.email
            and self.previous_session_id
            and self.previous_session_id != self.session_id
        )


@dataclass(frozen=True)
class TurnResult:
    """Outcome of process_turn."""

    success: bool
    handoff: bool = False
    error: str | None = None
    reply: str | None = None
    products: tuple[ProductSnapshot, ...] = ()
    credits_remaining: int | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class KeywordReply:
    """Canned or catalogue-backed answer served without the model."""

    intent: str
    text: str
    products: tuple[ProductSnapshot, ...] = ()


# ============================================================================
# Model Provider Models
# ============================================================================


@dataclass(frozen=True)
class ConversationTurn:
    """Prior message handed to the model as context."""

    role: MessageRole
    content: str


@dataclass(frozen=True)
class ModelRequest:
    """Everything the model needs for one reply."""

    shop: str
    session_id: str
    message: str
    history: tuple[ConversationTurn, ...] = ()
    preview: PreviewSettings | None = None


@dataclass(frozen=True)
class ModelReply:
    """Complete model reply."""

    text: str
    products: tuple[ProductSnapshot, ...] = ()
    tokens_used: int = 0


@dataclass(frozen=True)
class ModelChunk:
    """Streaming piece of a model reply; the final chunk carries products and usage."""

    text: str = ""
    final: bool = False
    products: tuple[ProductSnapshot, ...] = field(default_factory=tuple)
    tokens_used: int = 0
