"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class ChatServiceError(Exception):
    """Base exception for all chat service errors."""

    pass


class AccountNotFoundError(ChatServiceError):
    """Raised when a shop has no credit account."""

    def __init__(self, shop: str) -> None:
        self.shop = shop
        super().__init__(f"Credit account not found for shop: {shop}")


class PlanNotFoundError(ChatServiceError):
    """Raised when a plan referenced by name does not exist."""

    def __init__(self, plan_name: str) -> None:
        self.plan_name = plan_name
        super().__init__(f"Plan not found: {plan_name}")


class SessionNotFoundError(ChatServiceError):
    """Raised when a chat session doesn't exist for the shop."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Chat session not found: {session_id}")


class SessionOwnershipError(ChatServiceError):
    """Raised when a session is requested through a shop that doesn't own it."""

    def __init__(self, session_id: str, shop: str) -> None:
        self.session_id = session_id
        self.shop = shop
        super().__init__(f"Session {session_id} does not belong to shop {shop}")


class PersistenceError(ChatServiceError):
    """Raised when a durable write fails and was rolled back."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Persistence failed: {message}")


class ModelProviderError(ChatServiceError):
    """Raised when the generative model call fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Model provider error: {message}")


class ModelTimeoutError(ModelProviderError):
    """Raised when the generative model exceeds its deadline."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"model call exceeded {timeout_seconds}s")


class MirrorError(ChatServiceError):
    """Raised when the realtime mirror rejects or fails a request."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.message = message
        super().__init__(f"Realtime mirror error at {path}: {message}")


class AuthenticationError(ChatServiceError):
    """Raised when an admin session token is missing or invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
