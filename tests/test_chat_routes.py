"""
Tests for the storefront chat endpoints.

Routes run through TestClient against a fake service container.
"""

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_SHOP, make_session_token
from shopchat.exceptions import SessionOwnershipError
from shopchat.models.api import MessageRole, StreamEvent, StreamEventType
from shopchat.models.domain import ProductSnapshot, SessionData, StoredMessage, TurnRequest

ORIGIN = "https://test-shop.myshopify.com"
TURN = {"shop": TEST_SHOP, "sessionId": "session-1", "message": "Running shoes?"}


def parse_frames(body: str) -> list[dict]:
    return [
        json.loads(frame[len("data: ") :])
        for frame in body.split("\n\n")
        if frame.startswith("data: ")
    ]


def make_history(messages: tuple[StoredMessage, ...] = ()) -> SessionData:
    return SessionData(
        session_id="session-1",
        shop=TEST_SHOP,
        customer_id=None,
        is_guest=True,
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
        messages=messages,
    )


class TestCors:
    """Tests for cross-origin handling."""

    @pytest.mark.parametrize("path", ["/api/chat", "/api/chat/async"])
    def test_preflight(self, client: TestClient, path: str) -> None:
        response = client.options(path, headers={"Origin": ORIGIN})

        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert "POST" in response.headers["access-control-allow-methods"]

    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    def test_other_methods_rejected(self, client: TestClient, method: str) -> None:
        response = client.request(method, "/api/chat", headers={"Origin": ORIGIN})

        assert response.status_code == 405
        assert response.json() == {"success": False, "error": "Method not allowed"}
        assert response.headers["access-control-allow-origin"] == ORIGIN


class TestStreamEndpoint:
    """Tests for POST /api/chat."""

    def test_streams_events(self, client: TestClient, container: MagicMock) -> None:
        received: list[TurnRequest] = []

        async def stream_turn(turn: TurnRequest) -> AsyncIterator[StreamEvent]:
            received.append(turn)
            yield StreamEvent(type=StreamEventType.TEXT, content="Try these.")
            yield StreamEvent(
                type=StreamEventType.METADATA, session_id=turn.session_id, credits_remaining=9
            )

        container.orchestrator.stream_turn = stream_turn

        response = client.post("/api/chat", json=TURN, headers={"Origin": ORIGIN})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["access-control-allow-origin"] == ORIGIN
        frames = parse_frames(response.text)
        assert frames == [
            {"type": "text", "content": "Try these."},
            {"type": "metadata", "sessionId": "session-1", "creditsRemaining": 9},
        ]
        assert received[0].shop == TEST_SHOP
        assert received[0].email is None

    def test_unexpected_stream_error_frame(
        self, client: TestClient, container: MagicMock
    ) -> None:
        async def stream_turn(turn: TurnRequest) -> AsyncIterator[StreamEvent]:
            yield StreamEvent(type=StreamEventType.TEXT, content="Partial")
            raise RuntimeError("socket closed")

        container.orchestrator.stream_turn = stream_turn

        response = client.post("/api/chat", json=TURN)

        frames = parse_frames(response.text)
        assert frames[-1] == {"type": "error", "content": "Stream interrupted"}

    @pytest.mark.parametrize(
        "body",
        [
            {"sessionId": "session-1", "message": "Hi"},
            {"shop": TEST_SHOP, "message": "Hi"},
            {"shop": TEST_SHOP, "sessionId": "session-1"},
            {"shop": TEST_SHOP, "sessionId": "session-1", "message": "   "},
        ],
    )
    def test_missing_fields(self, client: TestClient, body: dict) -> None:
        response = client.post("/api/chat", json=body)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Missing or invalid fields"}

    def test_invalid_json(self, client: TestClient) -> None:
        response = client.post(
            "/api/chat", content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_merge_only_needs_no_message(
        self, client: TestClient, container: MagicMock
    ) -> None:
        received: list[TurnRequest] = []

        async def stream_turn(turn: TurnRequest) -> AsyncIterator[StreamEvent]:
            received.append(turn)
            yield StreamEvent(type=StreamEventType.METADATA, session_id=turn.session_id)

        container.orchestrator.stream_turn = stream_turn

        response = client.post(
            "/api/chat",
            json={
                "shop": TEST_SHOP,
                "sessionId": "session-1",
                "email": "shopper@example.com",
                "previousSessionId": "guest-session",
                "mergeOnly": True,
            },
        )

        assert response.status_code == 200
        assert received[0].merge_only is True
        assert received[0].needs_migration is True


class TestAsyncEndpoint:
    """Tests for POST /api/chat/async."""

    def test_turn_scheduled(self, client: TestClient, container: MagicMock) -> None:
        container.orchestrator.process_turn = AsyncMock()
        container.runner.submit = MagicMock(side_effect=lambda coro, name: coro.close())

        response = client.post(
            "/api/chat/async",
            json={**TURN, "previewSettings": {"tone": "formal", "customInstructions": "Be brief"}},
            headers={"Origin": ORIGIN},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert response.headers["access-control-allow-origin"] == ORIGIN
        assert container.runner.submit.call_args.kwargs["name"] == "chat-turn:session-1"
        turn = container.orchestrator.process_turn.call_args[0][0]
        assert turn.preview.tone == "formal"
        assert turn.preview.custom_instructions == "Be brief"

    def test_invalid_body_not_scheduled(self, client: TestClient, container: MagicMock) -> None:
        response = client.post("/api/chat/async", json={"shop": TEST_SHOP})

        assert response.status_code == 400
        container.runner.submit.assert_not_called()


class TestHistoryEndpoint:
    """Tests for GET /api/chat/history."""

    def test_requires_session_or_email(self, client: TestClient) -> None:
        response = client.get("/api/chat/history", params={"shop": TEST_SHOP})

        assert response.status_code == 400

    def test_history_by_session(self, client: TestClient, container: MagicMock) -> None:
        messages = (
            StoredMessage(
                message_id=1,
                role=MessageRole.USER,
                content="Shoes?",
                created_at=datetime(2026, 1, 1, tzinfo=UTC),
            ),
            StoredMessage(
                message_id=2,
                role=MessageRole.ASSISTANT,
                content="Try these.",
                created_at=datetime(2026, 1, 1, 0, 0, 1, tzinfo=UTC),
                products=(ProductSnapshot(product_id="p1", title="Trail Runner", price=89.0),),
            ),
        )
        container.store.get_history = AsyncMock(return_value=make_history(messages))

        response = client.get(
            "/api/chat/history", params={"shop": TEST_SHOP, "sessionId": "session-1"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["sessionId"] == "session-1"
        assert [m["content"] for m in body["messages"]] == ["Shoes?", "Try these."]
        assert body["messages"][1]["products"][0]["id"] == "p1"
        assert "createdAt" in body["messages"][0]

    def test_history_falls_back_to_email(self, client: TestClient, container: MagicMock) -> None:
        container.store.get_history = AsyncMock(return_value=None)
        container.store.latest_customer_session = AsyncMock(return_value=make_history())

        response = client.get(
            "/api/chat/history",
            params={"shop": TEST_SHOP, "sessionId": "gone", "email": "shopper@example.com"},
        )

        assert response.json()["sessionId"] == "session-1"
        container.store.latest_customer_session.assert_awaited_once_with(
            TEST_SHOP, "shopper@example.com"
        )

    def test_unknown_session_empty(self, client: TestClient, container: MagicMock) -> None:
        container.store.get_history = AsyncMock(return_value=None)

        response = client.get(
            "/api/chat/history", params={"shop": TEST_SHOP, "sessionId": "missing"}
        )

        assert response.status_code == 200
        assert response.json()["messages"] == []

    def test_other_shop_forbidden(self, client: TestClient, container: MagicMock) -> None:
        container.store.get_history = AsyncMock(
            side_effect=SessionOwnershipError("session-1", TEST_SHOP)
        )

        response = client.get(
            "/api/chat/history", params={"shop": TEST_SHOP, "sessionId": "session-1"}
        )

        assert response.status_code == 403


class TestSummaryEndpoint:
    """Tests for POST /api/summary."""

    def test_requires_admin_session(self, client: TestClient) -> None:
        response = client.post("/api/summary", json={"sessionId": "session-1"})

        assert response.status_code == 401

    def test_summary(
        self, client: TestClient, container: MagicMock, admin_headers: dict[str, str]
    ) -> None:
        messages = (
            StoredMessage(
                message_id=1,
                role=MessageRole.USER,
                content="Shoes?",
                created_at=datetime(2026, 1, 1, tzinfo=UTC),
            ),
        )
        container.store.get_history = AsyncMock(return_value=make_history(messages))

        response = client.post(
            "/api/summary", json={"sessionId": "session-1"}, headers=admin_headers
        )

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["overview"] == "Asked about shoes."
        assert summary["sentimentScore"] == 50
        container.store.get_history.assert_awaited_once_with(TEST_SHOP, "session-1")

    def test_empty_conversation(
        self, client: TestClient, container: MagicMock, admin_headers: dict[str, str]
    ) -> None:
        container.store.get_history = AsyncMock(return_value=make_history())

        response = client.post(
            "/api/summary", json={"sessionId": "session-1"}, headers=admin_headers
        )

        assert response.status_code == 404

    def test_session_of_other_shop(
        self, client: TestClient, container: MagicMock
    ) -> None:
        container.store.get_history = AsyncMock(
            side_effect=SessionOwnershipError("session-1", "other-shop.myshopify.com")
        )
        token = make_session_token(shop="other-shop.myshopify.com")

        response = client.post(
            "/api/summary",
            json={"sessionId": "session-1"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 403
