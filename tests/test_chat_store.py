"""
Tests for ChatStore.

Unit tests for session resolution, turn persistence and guest migration.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import (
    TEST_SHOP,
    create_mock_chat_session,
    create_mock_customer,
    create_mock_message,
    make_result,
)
from shopchat.db.models import ChatSession, Message, MessageProduct
from shopchat.exceptions import PersistenceError, SessionOwnershipError
from shopchat.models.api import MessageRole
from shopchat.models.domain import ProductSnapshot
from shopchat.services.chat_store import ChatStore, is_guest_identity


@pytest.fixture
def store(session_factory: MagicMock) -> ChatStore:
    return ChatStore(session_factory)


class TestGuestIdentity:
    """Tests for the guest sentinel."""

    def test_guest_sentinel(self) -> None:
        assert is_guest_identity("guest") is True
        assert is_guest_identity(None) is True
        assert is_guest_identity("") is True

    def test_email_is_not_guest(self) -> None:
        assert is_guest_identity("shopper@example.com") is False


class TestResolveSession:
    """Tests for choosing the session a turn belongs to."""

    async def test_guest_gets_new_session_with_given_id(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        resolved = await store.resolve_session(TEST_SHOP, "guest", "session-1")

        assert resolved.customer_id is None
        assert resolved.session.session_id == "session-1"
        assert resolved.session.is_guest is True
        assert resolved.session.messages == ()
        created = db_session.add.call_args[0][0]
        assert isinstance(created, ChatSession)
        assert created.shop == TEST_SHOP
        db_session.commit.assert_awaited_once()

    async def test_guest_without_session_id_gets_generated_id(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        resolved = await store.resolve_session(TEST_SHOP, None)

        assert resolved.session.session_id
        assert resolved.session.is_guest is True

    async def test_existing_guest_session_linked_to_customer(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        customer = create_mock_customer()
        chat = create_mock_chat_session("session-1")
        messages = [
            create_mock_message(1, MessageRole.USER, "Hi"),
            create_mock_message(2, MessageRole.ASSISTANT, "Hello!"),
        ]
        db_session.get = AsyncMock(return_value=chat)
        db_session.execute = AsyncMock(
            side_effect=[make_result(), make_result(customer), make_result(scalars=messages)]
        )

        resolved = await store.resolve_session(TEST_SHOP, "shopper@example.com", "session-1")

        assert chat.customer_id == customer.id
        assert chat.is_guest is False
        assert resolved.customer_id == customer.id
        assert [m.content for m in resolved.session.messages] == ["Hi", "Hello!"]
        assert resolved.session.messages[0].role == MessageRole.USER

    async def test_customer_latest_session_reused(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        customer = create_mock_customer()
        latest = create_mock_chat_session("older-session", customer_id=customer.id)
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(),
                make_result(customer),
                make_result(latest),
                make_result(scalars=[]),
            ]
        )

        resolved = await store.resolve_session(TEST_SHOP, "shopper@example.com", "new-session")

        assert resolved.session.session_id == "older-session"
        assert resolved.session.is_guest is False
        db_session.add.assert_not_called()

    async def test_session_of_other_shop_is_not_reused(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        foreign = create_mock_chat_session("session-1", shop="other-shop.myshopify.com")
        db_session.get = AsyncMock(return_value=foreign)

        resolved = await store.resolve_session(TEST_SHOP, "guest", "session-1")

        assert resolved.session.session_id != "session-1"
        assert resolved.session.shop == TEST_SHOP

    async def test_concurrent_create_reloads_existing(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        existing = create_mock_chat_session("session-1")
        db_session.get = AsyncMock(side_effect=[None, None, existing])
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("duplicate key"))
        )

        resolved = await store.resolve_session(TEST_SHOP, "guest", "session-1")

        assert resolved.session.session_id == "session-1"
        db_session.commit.assert_awaited_once()

    async def test_storage_failure_raises_persistence_error(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("connection reset"))
        )

        with pytest.raises(PersistenceError):
            await store.resolve_session(TEST_SHOP, "shopper@example.com", "session-1")

        db_session.rollback.assert_awaited_once()


class TestAppendTurn:
    """Tests for persisting both halves of a turn."""

    async def test_user_and_reply_written_together(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        products = (
            ProductSnapshot(product_id="p1", title="Trail Runner", price=89.0, handle="trail"),
            ProductSnapshot(product_id="p2", title="Road Runner", price=99.0, handle="road"),
        )

        await store.append_turn("session-1", "Running shoes?", "Try these.", products)

        user_message = db_session.add.call_args_list[0][0][0]
        reply = db_session.add.call_args_list[1][0][0]
        assert isinstance(user_message, Message)
        assert user_message.role == MessageRole.USER
        assert user_message.content == "Running shoes?"
        assert reply.role == MessageRole.ASSISTANT
        assert reply.created_at > user_message.created_at
        assert [p.product_id for p in reply.products] == ["p1", "p2"]
        assert all(isinstance(p, MessageProduct) for p in reply.products)
        db_session.commit.assert_awaited_once()

    async def test_system_reply_role(self, store: ChatStore, db_session: AsyncMock) -> None:
        await store.append_turn(
            "session-1", "Hello?", "A team member will assist you.", assistant_role=MessageRole.SYSTEM
        )

        reply = db_session.add.call_args_list[1][0][0]
        assert reply.role == MessageRole.SYSTEM
        assert reply.products == []

    async def test_failure_rolls_back_both(self, store: ChatStore, db_session: AsyncMock) -> None:
        db_session.commit = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("disk full"))
        )

        with pytest.raises(PersistenceError):
            await store.append_turn("session-1", "Hi", "Hello")

        db_session.rollback.assert_awaited_once()


class TestMigrateGuestSession:
    """Tests for moving a guest conversation to the identified session."""

    async def test_same_session_is_noop(
        self, store: ChatStore, session_factory: MagicMock
    ) -> None:
        moved = await store.migrate_guest_session(TEST_SHOP, "session-1", "session-1")

        assert moved == 0
        session_factory.assert_not_called()

    async def test_messages_moved_and_guest_marked(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        customer = create_mock_customer()
        guest = create_mock_chat_session("guest-session")
        db_session.get = AsyncMock(side_effect=[None, None, guest])
        db_session.execute = AsyncMock(
            side_effect=[make_result(), make_result(customer), make_result(rowcount=3)]
        )

        moved = await store.migrate_guest_session(
            TEST_SHOP, "guest-session", "customer-session", email="shopper@example.com"
        )

        assert moved == 3
        assert guest.merged_into == "customer-session"
        target = db_session.add.call_args[0][0]
        assert target.id == "customer-session"
        assert target.customer_id == customer.id
        assert target.is_guest is False
        move_stmt = str(db_session.execute.call_args_list[2][0][0])
        assert "UPDATE messages" in move_stmt
        db_session.commit.assert_awaited_once()

    async def test_repeat_migration_moves_nothing(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        target = create_mock_chat_session("customer-session")
        guest = create_mock_chat_session("guest-session", merged_into="customer-session")
        db_session.get = AsyncMock(side_effect=[target, guest])
        db_session.execute = AsyncMock(return_value=make_result(rowcount=0))

        moved = await store.migrate_guest_session(TEST_SHOP, "guest-session", "customer-session")

        assert moved == 0

    async def test_target_of_other_shop_rejected(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        foreign = create_mock_chat_session("customer-session", shop="other-shop.myshopify.com")
        db_session.get = AsyncMock(return_value=foreign)

        with pytest.raises(SessionOwnershipError):
            await store.migrate_guest_session(TEST_SHOP, "guest-session", "customer-session")

        db_session.commit.assert_not_awaited()

    async def test_missing_guest_session_moves_nothing(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        target = create_mock_chat_session("customer-session")
        db_session.get = AsyncMock(side_effect=[target, None])

        moved = await store.migrate_guest_session(TEST_SHOP, "guest-session", "customer-session")

        assert moved == 0
        db_session.execute.assert_not_awaited()


class TestHistory:
    """Tests for history reads."""

    async def test_unknown_session(self, store: ChatStore, db_session: AsyncMock) -> None:
        assert await store.get_history(TEST_SHOP, "missing") is None

    async def test_other_shop_rejected(self, store: ChatStore, db_session: AsyncMock) -> None:
        db_session.get = AsyncMock(
            return_value=create_mock_chat_session("session-1", shop="other-shop.myshopify.com")
        )

        with pytest.raises(SessionOwnershipError):
            await store.get_history(TEST_SHOP, "session-1")

    async def test_messages_in_timestamp_order(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        start = datetime(2026, 1, 1, tzinfo=UTC)
        messages = [
            create_mock_message(5, MessageRole.USER, "guest question", created_at=start),
            create_mock_message(
                2, MessageRole.USER, "customer question", created_at=start + timedelta(minutes=1)
            ),
        ]
        db_session.get = AsyncMock(return_value=create_mock_chat_session("session-1"))
        db_session.execute = AsyncMock(return_value=make_result(scalars=messages))

        history = await store.get_history(TEST_SHOP, "session-1")

        assert history is not None
        assert [m.message_id for m in history.messages] == [5, 2]
        stmt = str(db_session.execute.call_args[0][0])
        assert "ORDER BY messages.created_at, messages.id" in stmt

    async def test_latest_customer_session_unknown_email(
        self, store: ChatStore, db_session: AsyncMock
    ) -> None:
        assert await store.latest_customer_session(TEST_SHOP, "nobody@example.com") is None

    async def test_latest_customer_session(self, store: ChatStore, db_session: AsyncMock) -> None:
        customer = create_mock_customer()
        chat = create_mock_chat_session("session-9", customer_id=customer.id)
        db_session.execute = AsyncMock(
            side_effect=[make_result(customer), make_result(chat), make_result(scalars=[])]
        )

        session = await store.latest_customer_session(TEST_SHOP, customer.email)

        assert session is not None
        assert session.session_id == "session-9"
        assert session.customer_id == customer.id
