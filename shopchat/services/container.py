"""
Service Container - Composition root for long-lived clients and services.

Built once in the application lifespan and stored on app.state.
"""

from dataclasses import dataclass

import httpx
from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from shopchat.config import Settings
from shopchat.db.session import create_engine_from_settings, create_session_factory
from shopchat.services.catalog import ProductCatalog
from shopchat.services.chat_store import ChatStore
from shopchat.services.credits import CreditService
from shopchat.services.keywords import KeywordRouter
from shopchat.services.mirror import RealtimeMirror
from shopchat.services.model import ChatModel, OpenAIChatModel
from shopchat.services.orchestrator import ChatOrchestrator
from shopchat.services.runner import TurnRunner

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler needs, wired once."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    openai_client: AsyncOpenAI
    mirror: RealtimeMirror
    catalog: ProductCatalog
    model: ChatModel
    credits: CreditService
    store: ChatStore
    orchestrator: ChatOrchestrator
    runner: TurnRunner

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContainer":
        """Create engines, clients and services from settings."""
        engine = create_engine_from_settings(settings)
        session_factory = create_session_factory(engine)
        http_client = httpx.AsyncClient(timeout=settings.mirror_timeout_seconds)
        openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key or None,
            base_url=settings.openai_base_url,
            timeout=settings.model_timeout_seconds,
        )

        mirror = RealtimeMirror(
            settings.firebase_database_url,
            auth_token=settings.firebase_auth_token,
            http_client=http_client,
            timeout=settings.mirror_timeout_seconds,
        )
        if not mirror.enabled:
            logger.warning("realtime_mirror_disabled", reason="FIREBASE_DATABASE_URL not set")

        catalog = ProductCatalog(session_factory)
        model = OpenAIChatModel(
            openai_client,
            catalog,
            mirror,
            model=settings.chat_model,
            summary_model=settings.summary_model,
            temperature=settings.model_temperature,
            max_output_tokens=settings.model_max_output_tokens,
            timeout_seconds=settings.model_timeout_seconds,
        )
        credits = CreditService(
            session_factory,
            default_plan_name=settings.default_plan_name,
            default_monthly_credits=settings.default_monthly_credits,
            usage_message_max_chars=settings.usage_message_max_chars,
        )
        store = ChatStore(session_factory)
        orchestrator = ChatOrchestrator(
            credits,
            store,
            mirror,
            model,
            max_history_messages=settings.max_history_messages,
            model_timeout_seconds=settings.model_timeout_seconds,
            fallback_message=settings.fallback_message,
            internal_error_message=settings.internal_error_message,
            keywords=KeywordRouter(catalog) if settings.keyword_responses_enabled else None,
            keyword_response_credits=settings.keyword_response_credits,
        )

        return cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            http_client=http_client,
            openai_client=openai_client,
            mirror=mirror,
            catalog=catalog,
            model=model,
            credits=credits,
            store=store,
            orchestrator=orchestrator,
            runner=TurnRunner(),
        )

    async def close(self) -> None:
        """Drain background turns, then close clients and the engine."""
        await self.runner.shutdown(self.settings.background_shutdown_timeout)
        await self.openai_client.close()
        await self.http_client.aclose()
        await self.engine.dispose()
