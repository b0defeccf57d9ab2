"""
FastAPI Dependencies - Service lookup and Shopify admin authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from urllib.parse import urlparse

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from shopchat.config import Settings
from shopchat.exceptions import AuthenticationError
from shopchat.services.chat_store import ChatStore
from shopchat.services.container import ServiceContainer
from shopchat.services.credits import CreditService
from shopchat.services.model import ChatModel
from shopchat.services.orchestrator import ChatOrchestrator
from shopchat.services.runner import TurnRunner

logger = get_logger(__name__)

# ============================================================================
# Service lookup
# ============================================================================


def get_container(request: Request) -> ServiceContainer:
    """Service container built in the application lifespan."""
    container: ServiceContainer = request.app.state.container
    return container


def get_orchestrator(
    container: ServiceContainer = Depends(get_container),
) -> ChatOrchestrator:
    return container.orchestrator


def get_credit_service(container: ServiceContainer = Depends(get_container)) -> CreditService:
    return container.credits


def get_chat_store(container: ServiceContainer = Depends(get_container)) -> ChatStore:
    return container.store


def get_chat_model(container: ServiceContainer = Depends(get_container)) -> ChatModel:
    return container.model


def get_runner(container: ServiceContainer = Depends(get_container)) -> TurnRunner:
    return container.runner


# ============================================================================
# Shopify admin session tokens
# ============================================================================


@dataclass(frozen=True)
class ShopSession:
    """Authenticated embedded-admin session."""

    shop: str
    user_id: str | None = None


# Bearer token scheme for session tokens
bearer_scheme = HTTPBearer(auto_error=False)


def verify_session_token(token: str, settings: Settings) -> ShopSession:
    """
    Verify a Shopify App Bridge session token.

    The token is an HS256 JWT signed with the app secret whose audience is the
    app's API key. The shop domain comes from the `dest` claim.

    Raises:
        AuthenticationError: Token invalid, expired or for another app
    """
    if not settings.shopify_api_secret:
        raise AuthenticationError("SHOPIFY_API_SECRET is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.shopify_api_secret,
            algorithms=["HS256"],
            audience=settings.shopify_api_key or None,
            options={"require": ["exp", "dest"], "verify_aud": bool(settings.shopify_api_key)},
            leeway=5,
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("session token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(str(e)) from e

    shop = urlparse(str(claims["dest"])).netloc or str(claims["dest"])
    if not shop:
        raise AuthenticationError("session token has no shop")

    subject = claims.get("sub")
    return ShopSession(shop=shop, user_id=str(subject) if subject is not None else None)


async def require_shop_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> ShopSession:
    """
    FastAPI dependency for merchant-facing endpoints.

    Accepts: Authorization: Bearer {session_token}
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    settings: Settings = get_container(request).settings
    try:
        session = verify_session_token(credentials.credentials, settings)
    except AuthenticationError as e:
        logger.warning("session_token_rejected", error=e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    return session
