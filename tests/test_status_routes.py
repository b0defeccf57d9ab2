"""
Tests for status routes, metrics and application-level handlers.
"""

from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError


class TestRoot:
    """Tests for GET /."""

    def test_service_info(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"
        assert response.json()["service"] == "Shopchat API"


class TestHealth:
    """Tests for GET /health."""

    def test_healthy(
        self,
        client: TestClient,
        container: MagicMock,
        session_factory: MagicMock,
        db_session: AsyncMock,
    ) -> None:
        container.session_factory = session_factory

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"
        db_session.execute.assert_awaited_once()
        db_session.close.assert_awaited()

    def test_database_down(
        self,
        client: TestClient,
        container: MagicMock,
        session_factory: MagicMock,
        db_session: AsyncMock,
    ) -> None:
        container.session_factory = session_factory
        db_session.execute = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
        )

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["detail"]["database"] == "disconnected"


class TestMetricsEndpoint:
    """Tests for GET /metrics."""

    def test_prometheus_text(self, client: TestClient) -> None:
        client.get("/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "shopchat_http_requests_total" in response.text


class TestValidationHandler:
    """Tests for request validation errors."""

    def test_sanitized_errors(self, client: TestClient, admin_headers: dict[str, str]) -> None:
        response = client.post("/api/credits", json={"action": ""}, headers=admin_headers)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail[0]["loc"] == ["body", "action"]
        assert set(detail[0]) == {"type", "loc", "msg"}
