"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations
(plan feature flags are the one JSONB column).
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shopchat.models.api import CustomerSource, MessageRole, RequestType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


class MerchantPlan(Base):
    """
    ORM model for merchant_plans table.

    Subscription plans with their monthly credit allotment.
    """

    __tablename__ = "merchant_plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    max_concurrent_chats: Mapped[int] = mapped_column(Integer, nullable=False, default=2)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    features: Mapped[dict[str, bool]] = mapped_column(JSONB, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("monthly_credits >= 0", name="ck_plan_credits_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<MerchantPlan(name={self.name}, monthly_credits={self.monthly_credits})>"


class MerchantCredits(Base):
    """
    ORM model for merchant_credits table.

    One row per shop: current billing period counters and AI settings.
    """

    __tablename__ = "merchant_credits"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("merchant_plans.id"), nullable=False, index=True
    )
    plan: Mapped[MerchantPlan] = relationship(MerchantPlan, lazy="selectin")

    # Period counters
    total_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    used_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    remaining_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Settings
    ai_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_recharge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Running totals for the period
    total_requests: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_users: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("used_credits >= 0", name="ck_used_credits_non_negative"),
        CheckConstraint("remaining_credits >= 0", name="ck_remaining_credits_non_negative"),
        CheckConstraint("total_requests >= 0", name="ck_total_requests_non_negative"),
        CheckConstraint("total_users >= 0", name="ck_total_users_non_negative"),
        Index("idx_merchant_credits_period_end", "period_end"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<MerchantCredits(shop={self.shop}, used={self.used_credits}, "
            f"remaining={self.remaining_credits})>"
        )


class UsageLog(Base):
    """
    ORM model for usage_logs table.

    Append-only audit of every processed chat request.
    """

    __tablename__ = "usage_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_credits_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("merchant_credits.id", ondelete="CASCADE"),
        nullable=False,
    )
    shop: Mapped[str] = mapped_column(String(255), nullable=False)

    request_type: Mapped[RequestType] = mapped_column(
        SQLEnum(
            RequestType,
            name="usage_request_type",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_message: Mapped[str | None] = mapped_column(String(255), nullable=True)

    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    was_successful: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_usage_credits_non_negative"),
        Index("idx_usage_logs_account_created", "merchant_credits_id", "created_at"),
        Index(
            "idx_usage_logs_customer",
            "merchant_credits_id",
            "customer_id",
            postgresql_where=(customer_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageLog(shop={self.shop}, type={self.request_type}, "
            f"credits={self.credits_used}, ok={self.was_successful})>"
        )


class Customer(Base):
    """
    ORM model for customers table.

    Storefront shoppers known by email, per shop.
    """

    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[CustomerSource] = mapped_column(
        SQLEnum(
            CustomerSource,
            name="customer_source",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=CustomerSource.WEBSITE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (UniqueConstraint("shop", "email", name="uq_customer_shop_email"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Customer(shop={self.shop}, email={self.email})>"


class ChatSession(Base):
    """
    ORM model for chat_sessions table.

    Session ids are supplied by the widget (or generated) and double as the
    realtime mirror key.
    """

    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    is_guest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    merged_into: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_chat_sessions_customer_created", "shop", "customer_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ChatSession(id={self.id}, shop={self.shop}, guest={self.is_guest})>"


class Message(Base):
    """
    ORM model for messages table.

    One row per turn half. Ordered by (created_at, id) within a session.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(
        SQLEnum(
            MessageRole,
            name="message_role",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    products: Mapped[list["MessageProduct"]] = relationship(
        "MessageProduct", back_populates="message", lazy="selectin"
    )

    __table_args__ = (Index("idx_messages_session_created", "session_id", "created_at", "id"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Message(id={self.id}, session_id={self.session_id}, role={self.role})>"


class MessageProduct(Base):
    """
    ORM model for message_products table.

    Snapshot of a product shown with an assistant message.
    """

    __tablename__ = "message_products"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    handle: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    image: Mapped[str] = mapped_column(Text, nullable=False, default="")
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    message: Mapped[Message] = relationship(Message, back_populates="products")


class Product(Base):
    """
    ORM model for products table.

    Local copy of the storefront catalogue used for recommendations.
    """

    __tablename__ = "products"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    shop: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    handle: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    sales_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("shop", "product_id", name="uq_product_shop_product_id"),
        Index("idx_products_shop_price", "shop", "price"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Product(shop={self.shop}, product_id={self.product_id}, title={self.title})>"
