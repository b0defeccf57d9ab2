"""
Realtime Mirror - Firebase Realtime Database REST client.

The mirror is the low-latency projection the storefront widget and the
merchant inbox subscribe to. The relational store stays the source of truth.
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
from structlog import get_logger

from shopchat.exceptions import MirrorError
from shopchat.models.api import MirrorSender
from shopchat.observability import metrics

logger = get_logger(__name__)


def safe_shop_key(shop: str) -> str:
    """Firebase keys cannot contain '.', so shop domains use '_' instead."""
    return shop.replace(".", "_")


def messages_path(shop: str, session_id: str) -> str:
    """Mirror path of a session's message list."""
    return f"chats/{safe_shop_key(shop)}/{session_id}/messages"


def metadata_path(shop: str, session_id: str) -> str:
    """Mirror path of a session's metadata."""
    return f"chats/{safe_shop_key(shop)}/{session_id}/metadata"


@dataclass(frozen=True)
class MirrorEntry:
    """One message as the widget renders it."""

    sender: MirrorSender
    text: str
    product_ids: tuple[str, ...] = ()
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_payload(self) -> dict[str, Any]:
        """JSON body for the REST API."""
        payload: dict[str, Any] = {
            "sender": self.sender.value,
            "text": self.text,
            "timestamp": self.timestamp,
        }
        if self.product_ids:
            payload["product_ids"] = list(self.product_ids)
        return payload


@dataclass(frozen=True)
class SessionMetadata:
    """Per-session flags shared with the merchant inbox."""

    is_human_support: bool = False
    human_requested_at: int | None = None
    handoff_reason: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "SessionMetadata":
        """Parse the metadata node; anything malformed reads as empty."""
        if not isinstance(payload, dict):
            return cls()
        requested_at = payload.get("humanRequestedAt")
        return cls(
            is_human_support=bool(payload.get("isHumanSupport", False)),
            human_requested_at=requested_at if isinstance(requested_at, int) else None,
            handoff_reason=payload.get("handoffReason"),
        )


class RealtimeMirror:
    """Firebase Realtime Database over its REST API."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._http_client = http_client

    @property
    def enabled(self) -> bool:
        """False when no database URL is configured (local development)."""
        return bool(self.base_url)

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    # ========================================================================
    # Raw REST operations
    # ========================================================================

    async def get(self, path: str) -> Any:
        """Read a node; None when absent."""
        response = await self._request("GET", path)
        return self._decode("GET", path, response) if response is not None else None

    async def push(self, path: str, payload: dict[str, Any]) -> str | None:
        """Append a child with a generated key and return the key."""
        response = await self._request("POST", path, payload)
        if response is None:
            return None
        body = self._decode("POST", path, response)
        if not isinstance(body, dict):
            metrics.record_mirror_error("post")
            logger.error(
                "mirror_response_invalid",
                method="POST",
                path=path,
                body_type=type(body).__name__,
            )
            raise MirrorError(path, "unexpected push response")
        return body.get("name")

    async def update(self, path: str, payload: dict[str, Any]) -> None:
        """Merge children into a node."""
        await self._request("PATCH", path, payload)

    async def remove(self, path: str) -> None:
        """Delete a node."""
        await self._request("DELETE", path)

    # ========================================================================
    # Chat operations
    # ========================================================================

    async def push_message(self, shop: str, session_id: str, entry: MirrorEntry) -> str | None:
        """Append a message to the session's mirror."""
        return await self.push(messages_path(shop, session_id), entry.to_payload())

    async def get_metadata(self, shop: str, session_id: str) -> SessionMetadata:
        """Read the session's metadata flags."""
        return SessionMetadata.from_payload(await self.get(metadata_path(shop, session_id)))

    async def request_human_support(self, shop: str, session_id: str, reason: str) -> None:
        """Flag the session for a human agent."""
        await self.update(
            metadata_path(shop, session_id),
            {
                "isHumanSupport": True,
                "humanRequestedAt": int(datetime.now(UTC).timestamp() * 1000),
                "handoffReason": reason,
            },
        )
        logger.info("human_support_requested", shop=shop, session_id=session_id, reason=reason)

    async def migrate(self, shop: str, guest_session_id: str, target_session_id: str) -> int:
        """
        Copy guest messages under the target session and delete the guest node.

        Pushed keys are time-ordered, so merged children still sort
        chronologically. Returns the number of entries copied.
        """
        guest_path = messages_path(shop, guest_session_id)
        messages = await self.get(guest_path)
        if not isinstance(messages, dict) or not messages:
            return 0

        await self.update(messages_path(shop, target_session_id), messages)
        await self.remove(guest_path)
        logger.info(
            "mirror_session_migrated",
            shop=shop,
            guest_session_id=guest_session_id,
            target_session_id=target_session_id,
            copied=len(messages),
        )
        return len(messages)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> httpx.Response | None:
        if not self.enabled:
            return None

        params = {"auth": self.auth_token} if self.auth_token else None
        url = f"{self.base_url}/{path}.json"
        try:
            response = await self.http_client.request(method, url, json=payload, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.record_mirror_error(method.lower())
            logger.error(
                "mirror_request_failed",
                method=method,
                path=path,
                status=e.response.status_code,
            )
            raise MirrorError(path, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            metrics.record_mirror_error(method.lower())
            logger.error("mirror_request_error", method=method, path=path, error=str(e))
            raise MirrorError(path, str(e)) from e
        return response

    def _decode(self, method: str, path: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            metrics.record_mirror_error(method.lower())
            logger.error("mirror_response_invalid", method=method, path=path, error=str(e))
            raise MirrorError(path, "invalid JSON response") from e
