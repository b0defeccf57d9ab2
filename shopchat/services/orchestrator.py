"""
Chat Orchestrator - Per-turn state machine for storefront chat.

States, in order, each able to short-circuit:
1. Guest migration (merge-only calls stop here)
2. Human handoff passthrough
3. Credit gate
4. Keyword reply for simple questions, served without the model
5. Model turn with dual write (durable store + realtime mirror)
6. Failure path: one apology in the mirror, a failure result, never a raise
"""

import asyncio
import time
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing

from structlog import get_logger

from shopchat.exceptions import MirrorError, ModelTimeoutError, PersistenceError
from shopchat.models.api import (
    MessageRole,
    MirrorSender,
    ProductPayload,
    RequestType,
    StreamEvent,
    StreamEventType,
)
from shopchat.models.domain import (
    ConversationTurn,
    CreditAvailability,
    KeywordReply,
    ModelChunk,
    ModelReply,
    ModelRequest,
    ProductSnapshot,
    ResolvedSession,
    TurnRequest,
    TurnResult,
    UsageMetrics,
)
from shopchat.observability import log_context, metrics
from shopchat.observability.tracing import add_span_attributes, get_tracer, set_span_error
from shopchat.services.chat_store import ChatStore
from shopchat.services.credits import (
    REASON_AI_DISABLED,
    REASON_CHECK_FAILED,
    CreditService,
    credits_for_tokens,
)
from shopchat.services.keywords import KeywordRouter
from shopchat.services.mirror import MirrorEntry, RealtimeMirror
from shopchat.services.model import ChatModel

logger = get_logger(__name__)
tracer = get_tracer(__name__)

ERROR_INTERNAL = "INTERNAL_ERROR"
ERROR_AI_DISABLED = "AI_DISABLED"
ERROR_CREDITS_EXHAUSTED = "CREDITS_EXHAUSTED"
ERROR_CREDIT_CHECK_FAILED = "CREDIT_CHECK_FAILED"


def denial_error(availability: CreditAvailability) -> str:
    """Machine-readable error code for a credit denial."""
    if availability.reason == REASON_AI_DISABLED:
        return ERROR_AI_DISABLED
    if availability.reason == REASON_CHECK_FAILED:
        return ERROR_CREDIT_CHECK_FAILED
    return ERROR_CREDITS_EXHAUSTED


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _products_payload(products: tuple[ProductSnapshot, ...]) -> list[ProductPayload]:
    return [
        ProductPayload(
            id=p.product_id,
            title=p.title,
            price=p.price,
            handle=p.handle,
            image=p.image,
            score=p.score,
        )
        for p in products
    ]


class ChatOrchestrator:
    """Runs chat turns against the ledger, the store, the mirror and the model."""

    def __init__(
        self,
        credits: CreditService,
        store: ChatStore,
        mirror: RealtimeMirror,
        model: ChatModel,
        max_history_messages: int = 12,
        model_timeout_seconds: float = 30.0,
        fallback_message: str = "I'm currently unavailable. A team member will assist you shortly!",
        internal_error_message: str = "I encountered an internal error. Please try again.",
        keywords: KeywordRouter | None = None,
        keyword_response_credits: int = 0,
    ) -> None:
        self.credits = credits
        self.store = store
        self.mirror = mirror
        self.model = model
        self.keywords = keywords
        self.keyword_response_credits = keyword_response_credits
        self.max_history_messages = max_history_messages
        self.model_timeout_seconds = model_timeout_seconds
        self.fallback_message = fallback_message
        self.internal_error_message = internal_error_message

    # ========================================================================
    # Blocking turn
    # ========================================================================

    async def process_turn(self, request: TurnRequest) -> TurnResult:
        """
        Process one chat turn to completion.

        Never raises for dependency failures: they become a TurnResult with
        error INTERNAL_ERROR and an apology in the mirror.
        """
        started = time.perf_counter()
        with (
            log_context(shop=request.shop, session_id=request.session_id),
            tracer.start_as_current_span("chat_turn") as span,
        ):
            add_span_attributes(span, shop=request.shop, session_id=request.session_id)
            try:
                await self._migrate_if_needed(request)
                if request.merge_only:
                    self._record_outcome("merged", False, started)
                    return TurnResult(success=True, session_id=request.session_id)

                metadata = await self.mirror.get_metadata(request.shop, request.session_id)
                if metadata.is_human_support:
                    await self._human_passthrough(request)
                    self._record_outcome("handoff", False, started)
                    return TurnResult(success=True, handoff=True, session_id=request.session_id)

                availability = await self.credits.check_availability(request.shop)
                if not availability.allowed:
                    error = await self._deny(request, availability)
                    self._record_outcome("denied", False, started)
                    return TurnResult(
                        success=False,
                        handoff=True,
                        error=error,
                        reply=self.fallback_message,
                        credits_remaining=availability.remaining,
                        session_id=request.session_id,
                    )

                keyword = await self._match_keywords(request)
                if keyword is not None:
                    remaining = await self._keyword_turn(request, availability, keyword, started)
                    self._record_outcome("keyword", False, started)
                    return TurnResult(
                        success=True,
                        reply=keyword.text,
                        products=keyword.products,
                        credits_remaining=remaining,
                        session_id=request.session_id,
                    )

                result = await self._model_turn(request, availability, started)
                self._record_outcome("completed", False, started)
                return result
            except Exception as e:
                set_span_error(span, e)
                await self._fail(request, e, started)
                self._record_outcome("failed", False, started)
                return TurnResult(success=False, error=ERROR_INTERNAL, session_id=request.session_id)

    # ========================================================================
    # Streaming turn
    # ========================================================================

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        """
        Process one chat turn, yielding events as the reply is produced.

        A normal turn yields text deltas then one metadata event. Handoff and
        credit denial yield a metadata event with handoff set. Any failure,
        the model deadline included, yields one terminal error event.
        """
        started = time.perf_counter()
        with (
            log_context(shop=request.shop, session_id=request.session_id),
            tracer.start_as_current_span("chat_turn") as span,
        ):
            add_span_attributes(
                span, shop=request.shop, session_id=request.session_id, streaming=True
            )
            try:
                await self._migrate_if_needed(request)
                if request.merge_only:
                    self._record_outcome("merged", True, started)
                    yield StreamEvent(type=StreamEventType.METADATA, session_id=request.session_id)
                    return

                metadata = await self.mirror.get_metadata(request.shop, request.session_id)
                if metadata.is_human_support:
                    await self._human_passthrough(request)
                    self._record_outcome("handoff", True, started)
                    yield StreamEvent(
                        type=StreamEventType.METADATA,
                        handoff=True,
                        session_id=request.session_id,
                    )
                    return

                availability = await self.credits.check_availability(request.shop)
                if not availability.allowed:
                    await self._deny(request, availability)
                    self._record_outcome("denied", True, started)
                    yield StreamEvent(type=StreamEventType.TEXT, content=self.fallback_message)
                    yield StreamEvent(
                        type=StreamEventType.METADATA,
                        handoff=True,
                        session_id=request.session_id,
                        credits_remaining=availability.remaining,
                    )
                    return

                keyword = await self._match_keywords(request)
                if keyword is not None:
                    remaining = await self._keyword_turn(request, availability, keyword, started)
                    self._record_outcome("keyword", True, started)
                    yield StreamEvent(type=StreamEventType.TEXT, content=keyword.text)
                    yield StreamEvent(
                        type=StreamEventType.METADATA,
                        products=_products_payload(keyword.products),
                        session_id=request.session_id,
                        credits_remaining=remaining,
                    )
                    return

                await self._push(request, MirrorEntry(MirrorSender.USER, request.message))
                resolved = await self.store.resolve_session(
                    request.shop, request.identity, request.session_id
                )

                parts: list[str] = []
                final = ModelChunk(final=True)
                async with aclosing(
                    self._bounded_stream(self._model_request(request, resolved))
                ) as chunks:
                    async for chunk in chunks:
                        if chunk.final:
                            final = chunk
                        elif chunk.text:
                            parts.append(chunk.text)
                            yield StreamEvent(type=StreamEventType.TEXT, content=chunk.text)

                reply = ModelReply(
                    text="".join(parts),
                    products=final.products,
                    tokens_used=final.tokens_used,
                )
                credits_used = credits_for_tokens(reply.tokens_used)
                await self._complete_turn(
                    request,
                    resolved,
                    reply,
                    UsageMetrics(
                        request_type=RequestType.AI_CHAT,
                        credits_used=credits_used,
                        was_successful=True,
                        response_time_ms=_elapsed_ms(started),
                        tokens_used=reply.tokens_used,
                    ),
                )
                self._record_outcome("completed", True, started)
                logger.info("stream_turn_completed", products=len(reply.products))
                yield StreamEvent(
                    type=StreamEventType.METADATA,
                    products=_products_payload(reply.products),
                    session_id=request.session_id,
                    credits_remaining=max(availability.remaining - credits_used, 0),
                )
            except Exception as e:
                set_span_error(span, e)
                await self._fail(request, e, started)
                self._record_outcome("failed", True, started)
                yield StreamEvent(type=StreamEventType.ERROR, content=self.internal_error_message)

    # ========================================================================
    # States
    # ========================================================================

    async def _migrate_if_needed(self, request: TurnRequest) -> None:
        """Move the previous guest conversation into this session."""
        if not request.needs_migration:
            return
        previous = request.previous_session_id or ""
        moved = await self.store.migrate_guest_session(
            request.shop, previous, request.session_id, email=request.email
        )
        copied = await self.mirror.migrate(request.shop, previous, request.session_id)
        logger.info(
            "turn_migrated_guest",
            previous_session_id=previous,
            moved=moved,
            mirror_copied=copied,
        )

    async def _human_passthrough(self, request: TurnRequest) -> None:
        """A human agent owns the session: relay the message, skip the model."""
        await self._push(request, MirrorEntry(MirrorSender.USER, request.message))
        try:
            resolved = await self.store.resolve_session(
                request.shop, request.identity, request.session_id
            )
            await self.store.append_message(
                resolved.session.session_id, MessageRole.USER, request.message
            )
        except PersistenceError as e:
            # The mirror already holds the message the agent needs.
            logger.error("handoff_message_persist_failed", error=str(e))
        await self.credits.record_usage(
            request.shop,
            UsageMetrics(
                request_type=RequestType.MANUAL_HANDOFF,
                credits_used=0,
                was_successful=True,
            ),
            session_id=request.session_id,
            message=request.message,
        )
        logger.info("turn_human_passthrough")

    async def _deny(self, request: TurnRequest, availability: CreditAvailability) -> str:
        """Credit gate closed: fallback reply, handoff usage entry. Returns the error code."""
        error = denial_error(availability)
        await self._push(request, MirrorEntry(MirrorSender.USER, request.message))
        await self._push(request, MirrorEntry(MirrorSender.SYSTEM, self.fallback_message))
        resolved = await self.store.resolve_session(
            request.shop, request.identity, request.session_id
        )
        await self.store.append_turn(
            resolved.session.session_id,
            request.message,
            self.fallback_message,
            (),
            assistant_role=MessageRole.SYSTEM,
        )
        await self.credits.record_usage(
            request.shop,
            UsageMetrics(
                request_type=RequestType.MANUAL_HANDOFF,
                credits_used=0,
                was_successful=False,
                error_message=error,
            ),
            session_id=request.session_id,
            customer_id=str(resolved.customer_id) if resolved.customer_id else None,
            message=request.message,
        )
        logger.info("turn_credit_denied", reason=availability.reason, error=error)
        return error

    async def _model_turn(
        self, request: TurnRequest, availability: CreditAvailability, started: float
    ) -> TurnResult:
        """Normal turn: ask the model, persist both halves, debit credits."""
        await self._push(request, MirrorEntry(MirrorSender.USER, request.message))
        resolved = await self.store.resolve_session(
            request.shop, request.identity, request.session_id
        )
        model_request = self._model_request(request, resolved)
        try:
            reply = await asyncio.wait_for(
                self.model.generate(model_request), timeout=self.model_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ModelTimeoutError(self.model_timeout_seconds) from e

        credits_used = credits_for_tokens(reply.tokens_used)
        await self._complete_turn(
            request,
            resolved,
            reply,
            UsageMetrics(
                request_type=RequestType.AI_CHAT,
                credits_used=credits_used,
                was_successful=True,
                response_time_ms=_elapsed_ms(started),
                tokens_used=reply.tokens_used,
            ),
        )
        logger.info("turn_completed", products=len(reply.products), tokens=reply.tokens_used)
        return TurnResult(
            success=True,
            reply=reply.text,
            products=reply.products,
            credits_remaining=max(availability.remaining - credits_used, 0),
            session_id=request.session_id,
        )

    async def _match_keywords(self, request: TurnRequest) -> KeywordReply | None:
        if self.keywords is None or not request.message.strip():
            return None
        return await self.keywords.match(request.shop, request.message)

    async def _keyword_turn(
        self,
        request: TurnRequest,
        availability: CreditAvailability,
        keyword: KeywordReply,
        started: float,
    ) -> int:
        """Serve a keyword reply without the model. Returns remaining credits."""
        await self._push(request, MirrorEntry(MirrorSender.USER, request.message))
        resolved = await self.store.resolve_session(
            request.shop, request.identity, request.session_id
        )
        await self._complete_turn(
            request,
            resolved,
            ModelReply(text=keyword.text, products=keyword.products),
            UsageMetrics(
                request_type=RequestType.KEYWORD_RESPONSE,
                credits_used=self.keyword_response_credits,
                was_successful=True,
                response_time_ms=_elapsed_ms(started),
            ),
        )
        logger.info("turn_keyword_reply", intent=keyword.intent, products=len(keyword.products))
        return max(availability.remaining - self.keyword_response_credits, 0)

    async def _complete_turn(
        self,
        request: TurnRequest,
        resolved: ResolvedSession,
        reply: ModelReply,
        usage: UsageMetrics,
    ) -> None:
        """Persist the turn, mirror the reply and record usage."""
        await self.store.append_turn(
            resolved.session.session_id, request.message, reply.text, reply.products
        )
        await self._push(
            request,
            MirrorEntry(
                MirrorSender.AI,
                reply.text,
                product_ids=tuple(p.product_id for p in reply.products),
            ),
        )
        await self.credits.record_usage(
            request.shop,
            usage,
            session_id=request.session_id,
            customer_id=str(resolved.customer_id) if resolved.customer_id else None,
            message=request.message,
        )

    async def _fail(self, request: TurnRequest, error: Exception, started: float) -> None:
        """Log, record an unsuccessful usage entry and apologize in the mirror."""
        logger.error(
            "chat_turn_failed",
            shop=request.shop,
            session_id=request.session_id,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=error,
        )
        metrics.record_error(type(error).__name__, "chat_turn")
        await self.credits.record_usage(
            request.shop,
            UsageMetrics(
                request_type=RequestType.AI_CHAT,
                credits_used=0,
                was_successful=False,
                response_time_ms=_elapsed_ms(started),
                error_message=str(error)[:500],
            ),
            session_id=request.session_id,
            message=request.message,
        )
        try:
            await self._push(
                request, MirrorEntry(MirrorSender.SYSTEM, self.internal_error_message)
            )
        except MirrorError as e:
            logger.error("failure_notice_push_failed", error=str(e))

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _push(self, request: TurnRequest, entry: MirrorEntry) -> None:
        await self.mirror.push_message(request.shop, request.session_id, entry)

    def _model_request(self, request: TurnRequest, resolved: ResolvedSession) -> ModelRequest:
        """Model input with history trimmed to the newest messages."""
        messages = resolved.session.messages
        if self.max_history_messages <= 0:
            messages = ()
        elif len(messages) > self.max_history_messages:
            messages = messages[-self.max_history_messages :]
        return ModelRequest(
            shop=request.shop,
            session_id=request.session_id,
            message=request.message,
            history=tuple(ConversationTurn(role=m.role, content=m.content) for m in messages),
            preview=request.preview,
        )

    async def _bounded_stream(
        self, model_request: ModelRequest
    ) -> AsyncGenerator[ModelChunk, None]:
        """
        Relay model chunks under one overall deadline.

        Each wait is bounded by the time left, so a stalled stream fails at
        the deadline rather than hanging. The model stream is always closed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.model_timeout_seconds
        stream = self.model.stream(model_request)
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ModelTimeoutError(self.model_timeout_seconds)
                try:
                    chunk = await asyncio.wait_for(anext(stream), timeout=remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    raise ModelTimeoutError(self.model_timeout_seconds) from e
                yield chunk
        finally:
            await stream.aclose()

    def _record_outcome(self, outcome: str, streaming: bool, started: float) -> None:
        metrics.record_chat_turn(
            outcome=outcome,
            streaming=streaming,
            duration=time.perf_counter() - started,
        )
