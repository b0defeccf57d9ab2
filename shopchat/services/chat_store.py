"""
Chat Store - Durable sessions, customers and messages.

NO DICTIONARIES - All reads return immutable domain snapshots.
Every public operation is one transaction; failures roll back and raise
PersistenceError.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from shopchat.db.models import ChatSession, Customer, Message, MessageProduct
from shopchat.exceptions import PersistenceError, SessionOwnershipError
from shopchat.models.api import CustomerSource, MessageRole
from shopchat.models.domain import (
    GUEST_IDENTITY,
    ProductSnapshot,
    ResolvedSession,
    SessionData,
    StoredMessage,
)

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def is_guest_identity(identity: str | None) -> bool:
    """True for a missing identity or the guest sentinel."""
    return not identity or identity == GUEST_IDENTITY


class ChatStore:
    """Relational store for chat sessions and their messages."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize chat store with a session factory."""
        self.session_factory = session_factory

    async def resolve_session(
        self,
        shop: str,
        identity: str | None,
        session_id: str | None = None,
    ) -> ResolvedSession:
        """
        Find or create the session a turn belongs to.

        Order: an existing session with the given id in this shop, then the
        customer's most recent session, then a new one (keyed by session_id
        when supplied). Guests are never looked up by identity.
        """
        async with self.session_factory() as session:
            try:
                customer: Customer | None = None
                if not is_guest_identity(identity):
                    customer = await self._upsert_customer(session, shop, identity or "")

                chat: ChatSession | None = None
                if session_id:
                    chat = await self._find_session(session, shop, session_id)
                if chat is not None and customer is not None and chat.customer_id is None:
                    chat.customer_id = customer.id
                    chat.is_guest = False

                if chat is None and customer is not None:
                    chat = await self._latest_session_for(session, shop, customer.id)

                if chat is None:
                    chat = await self._create_session(
                        session, shop, session_id, customer.id if customer else None
                    )

                await session.commit()
                messages = await self._load_messages(session, chat.id)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("resolve_session_failed", shop=shop, session_id=session_id, error=str(e))
                raise PersistenceError(f"could not resolve session for {shop}") from e

            return ResolvedSession(
                session=self._session_to_domain(chat, messages),
                customer_id=customer.id if customer else None,
            )

    async def append_turn(
        self,
        session_id: str,
        user_text: str,
        assistant_text: str,
        products: tuple[ProductSnapshot, ...] | list[ProductSnapshot] = (),
        assistant_role: MessageRole = MessageRole.ASSISTANT,
    ) -> None:
        """
        Persist a user message and its reply atomically.

        Product snapshots are attached to the reply. Either both messages are
        written or neither is.
        """
        async with self.session_factory() as session:
            try:
                asked_at = _utc_now()
                user_message = Message(
                    session_id=session_id,
                    role=MessageRole.USER,
                    content=user_text,
                    created_at=asked_at,
                )
                reply = Message(
                    session_id=session_id,
                    role=assistant_role,
                    content=assistant_text,
                    created_at=max(_utc_now(), asked_at + timedelta(microseconds=1)),
                )
                reply.products = [
                    MessageProduct(
                        product_id=p.product_id,
                        title=p.title,
                        price=p.price,
                        handle=p.handle,
                        image=p.image,
                        score=p.score,
                    )
                    for p in products
                ]
                session.add(user_message)
                session.add(reply)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("append_turn_failed", session_id=session_id, error=str(e))
                raise PersistenceError(f"could not save turn for session {session_id}") from e

        logger.debug(
            "turn_persisted",
            session_id=session_id,
            assistant_role=assistant_role.value,
            products=len(products),
        )

    async def append_message(self, session_id: str, role: MessageRole, content: str) -> None:
        """Persist a single message."""
        async with self.session_factory() as session:
            try:
                session.add(Message(session_id=session_id, role=role, content=content))
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("append_message_failed", session_id=session_id, error=str(e))
                raise PersistenceError(f"could not save message for session {session_id}") from e

    async def migrate_guest_session(
        self,
        shop: str,
        guest_session_id: str,
        target_session_id: str,
        email: str | None = None,
    ) -> int:
        """
        Move a guest conversation into the target session.

        The target is created (and linked to the customer when an email is
        known) if needed. Messages keep their timestamps, so history reads
        interleave both conversations chronologically. Returns the number of
        messages moved; a repeated call moves none.

        Raises:
            SessionOwnershipError: Target session belongs to another shop
            PersistenceError: Storage failure (rolled back)
        """
        if guest_session_id == target_session_id:
            return 0

        async with self.session_factory() as session:
            try:
                customer: Customer | None = None
                if not is_guest_identity(email):
                    customer = await self._upsert_customer(session, shop, email or "")

                target = await session.get(ChatSession, target_session_id)
                if target is None:
                    target = await self._create_session(
                        session, shop, target_session_id, customer.id if customer else None
                    )
                elif target.shop != shop:
                    raise SessionOwnershipError(target_session_id, shop)
                elif customer is not None and target.customer_id is None:
                    target.customer_id = customer.id
                    target.is_guest = False

                moved = 0
                guest = await session.get(ChatSession, guest_session_id)
                if guest is not None and guest.shop == shop:
                    result = await session.execute(
                        update(Message)
                        .where(Message.session_id == guest_session_id)
                        .values(session_id=target_session_id)
                    )
                    moved = result.rowcount or 0
                    guest.merged_into = target_session_id
                elif guest is not None:
                    logger.warning(
                        "guest_session_shop_mismatch",
                        shop=shop,
                        guest_session_id=guest_session_id,
                    )

                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    "guest_migration_failed",
                    shop=shop,
                    guest_session_id=guest_session_id,
                    target_session_id=target_session_id,
                    error=str(e),
                )
                raise PersistenceError(f"could not migrate session {guest_session_id}") from e

        logger.info(
            "guest_session_migrated",
            shop=shop,
            guest_session_id=guest_session_id,
            target_session_id=target_session_id,
            moved=moved,
        )
        return moved

    async def get_history(self, shop: str, session_id: str) -> SessionData | None:
        """
        Load a session with its ordered messages.

        Raises:
            SessionOwnershipError: Session belongs to another shop
        """
        async with self.session_factory() as session:
            chat = await session.get(ChatSession, session_id)
            if chat is None:
                return None
            if chat.shop != shop:
                raise SessionOwnershipError(session_id, shop)
            messages = await self._load_messages(session, chat.id)
            return self._session_to_domain(chat, messages)

    async def latest_customer_session(self, shop: str, email: str) -> SessionData | None:
        """Most recent session of the customer with this email, if any."""
        async with self.session_factory() as session:
            stmt = select(Customer).where(Customer.shop == shop, Customer.email == email)
            result = await session.execute(stmt)
            customer = result.scalar_one_or_none()
            if customer is None:
                return None
            chat = await self._latest_session_for(session, shop, customer.id)
            if chat is None:
                return None
            messages = await self._load_messages(session, chat.id)
            return self._session_to_domain(chat, messages)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _upsert_customer(self, session: AsyncSession, shop: str, email: str) -> Customer:
        """Insert the customer if missing and return the row."""
        stmt = (
            pg_insert(Customer)
            .values(id=uuid4(), shop=shop, email=email, source=CustomerSource.WEBSITE)
            .on_conflict_do_nothing(constraint="uq_customer_shop_email")
        )
        await session.execute(stmt)
        result = await session.execute(
            select(Customer).where(Customer.shop == shop, Customer.email == email)
        )
        return result.scalar_one()

    async def _find_session(
        self, session: AsyncSession, shop: str, session_id: str
    ) -> ChatSession | None:
        """Session with this id, ignoring sessions of other shops."""
        chat = await session.get(ChatSession, session_id)
        if chat is not None and chat.shop != shop:
            logger.warning("session_shop_mismatch", shop=shop, session_id=session_id)
            return None
        return chat

    async def _latest_session_for(
        self, session: AsyncSession, shop: str, customer_id: UUID
    ) -> ChatSession | None:
        """Most recent session owned by a customer."""
        stmt = (
            select(ChatSession)
            .where(
                ChatSession.shop == shop,
                ChatSession.customer_id == customer_id,
                ChatSession.merged_into.is_(None),
            )
            .order_by(ChatSession.created_at.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _create_session(
        self,
        session: AsyncSession,
        shop: str,
        session_id: str | None,
        customer_id: UUID | None,
    ) -> ChatSession:
        """
        Create a session, keyed by session_id when that id is free.

        An id already taken by another shop gets a fresh one instead.
        """
        new_id = session_id or str(uuid4())
        if session_id and await session.get(ChatSession, session_id) is not None:
            new_id = str(uuid4())

        chat = ChatSession(
            id=new_id,
            shop=shop,
            customer_id=customer_id,
            is_guest=customer_id is None,
            created_at=_utc_now(),
        )
        try:
            async with session.begin_nested():
                session.add(chat)
                await session.flush()
        except IntegrityError:
            # Race condition - same id created by a concurrent turn
            existing = await session.get(ChatSession, new_id)
            if existing is None or existing.shop != shop:
                raise
            return existing

        logger.info("chat_session_created", shop=shop, session_id=new_id, guest=chat.is_guest)
        return chat

    async def _load_messages(self, session: AsyncSession, session_id: str) -> list[Message]:
        """Messages of a session in (created_at, id) order."""
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.created_at, Message.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    def _message_to_domain(self, message: Message) -> StoredMessage:
        """Convert ORM message to domain model."""
        return StoredMessage(
            message_id=message.id,
            role=MessageRole(message.role),
            content=message.content,
            created_at=message.created_at,
            products=tuple(
                ProductSnapshot(
                    product_id=p.product_id,
                    title=p.title,
                    price=p.price,
                    handle=p.handle,
                    image=p.image,
                    score=p.score,
                )
                for p in message.products
            ),
        )

    def _session_to_domain(self, chat: ChatSession, messages: list[Message]) -> SessionData:
        """Convert ORM session to domain model."""
        return SessionData(
            session_id=chat.id,
            shop=chat.shop,
            customer_id=chat.customer_id,
            is_guest=chat.is_guest,
            created_at=chat.created_at,
            messages=tuple(self._message_to_domain(m) for m in messages),
        )
