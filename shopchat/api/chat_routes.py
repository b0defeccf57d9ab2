"""
Chat API routes - Storefront widget endpoints.

Public endpoints called cross-origin from the storefront; CORS headers echo
the caller's Origin.
"""

import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError
from structlog import get_logger

from shopchat.api.dependencies import (
    ShopSession,
    get_chat_model,
    get_chat_store,
    get_orchestrator,
    get_runner,
    require_shop_session,
)
from shopchat.exceptions import SessionOwnershipError
from shopchat.models.api import (
    ChatAcceptedResponse,
    ChatTurnRequest,
    ErrorResponse,
    HistoryMessage,
    HistoryResponse,
    ProductPayload,
    StreamEvent,
    StreamEventType,
    SummaryRequest,
    SummaryResponse,
)
from shopchat.models.domain import SessionData, TurnRequest
from shopchat.services.chat_store import ChatStore
from shopchat.services.model import ChatModel
from shopchat.services.orchestrator import ChatOrchestrator
from shopchat.services.runner import TurnRunner

logger = get_logger(__name__)
router = APIRouter(tags=["chat"])

CHAT_METHODS_NOT_ALLOWED = ["GET", "PUT", "PATCH", "DELETE"]


def cors_headers(request: Request) -> dict[str, str]:
    """Permissive CORS headers echoing the caller's origin."""
    return {
        "Access-Control-Allow-Origin": request.headers.get("origin") or "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Vary": "Origin",
    }


async def parse_turn_request(request: Request) -> ChatTurnRequest | JSONResponse:
    """Validate the turn body; a 400 response is returned instead of raising."""
    try:
        body = await request.json()
        return ChatTurnRequest.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
        logger.warning("chat_request_invalid", path=request.url.path, error=str(e)[:500])
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error="Missing or invalid fields").model_dump(),
            headers=cors_headers(request),
        )


def to_turn(body: ChatTurnRequest) -> TurnRequest:
    return TurnRequest(
        shop=body.shop,
        session_id=body.session_id,
        message=body.message,
        email=body.email or None,
        previous_session_id=body.previous_session_id or None,
        preview=body.preview_settings,
        merge_only=body.merge_only,
    )


# ============================================================================
# Turn endpoints
# ============================================================================


@router.options("/api/chat")
@router.options("/api/chat/async")
async def chat_preflight(request: Request) -> Response:
    """CORS preflight."""
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=cors_headers(request))


@router.api_route("/api/chat", methods=CHAT_METHODS_NOT_ALLOWED)
@router.api_route("/api/chat/async", methods=CHAT_METHODS_NOT_ALLOWED)
async def chat_method_not_allowed(request: Request) -> JSONResponse:
    """Only POST carries chat turns."""
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content=ErrorResponse(error="Method not allowed").model_dump(),
        headers=cors_headers(request),
    )


@router.post("/api/chat")
async def chat_stream(
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Response:
    """
    Process a chat turn and stream the reply as server-sent events.

    Each frame is `data: <json>\\n\\n` carrying a text, metadata or error event.
    """
    parsed = await parse_turn_request(request)
    if isinstance(parsed, JSONResponse):
        return parsed
    turn = to_turn(parsed)

    async def event_stream() -> AsyncIterator[str]:
        events = orchestrator.stream_turn(turn)
        try:
            async for event in events:
                yield event.to_sse()
        except Exception as e:
            logger.error("chat_stream_interrupted", session_id=turn.session_id, error=str(e))
            yield StreamEvent(type=StreamEventType.ERROR, content="Stream interrupted").to_sse()
        finally:
            await events.aclose()

    headers = cors_headers(request)
    headers.update({"Cache-Control": "no-cache", "Connection": "keep-alive"})
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


@router.post("/api/chat/async", response_model=ChatAcceptedResponse)
async def chat_async(
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    runner: TurnRunner = Depends(get_runner),
) -> Response:
    """
    Accept a chat turn and process it in the background.

    The reply reaches the widget through the realtime mirror.
    """
    parsed = await parse_turn_request(request)
    if isinstance(parsed, JSONResponse):
        return parsed
    turn = to_turn(parsed)

    runner.submit(orchestrator.process_turn(turn), name=f"chat-turn:{turn.session_id}")
    logger.info("chat_turn_accepted", shop=turn.shop, session_id=turn.session_id)
    return JSONResponse(
        content=ChatAcceptedResponse().model_dump(),
        headers=cors_headers(request),
    )


# ============================================================================
# History and summary
# ============================================================================


def _history_response(session: SessionData | None) -> HistoryResponse:
    if session is None:
        return HistoryResponse(session_id=None, messages=[])
    return HistoryResponse(
        session_id=session.session_id,
        messages=[
            HistoryMessage(
                id=m.message_id,
                role=m.role,
                content=m.content,
                created_at=m.created_at,
                products=[
                    ProductPayload(
                        id=p.product_id,
                        title=p.title,
                        price=p.price,
                        handle=p.handle,
                        image=p.image,
                        score=p.score,
                    )
                    for p in m.products
                ],
            )
            for m in session.messages
        ],
    )


@router.get("/api/chat/history")
async def chat_history(
    request: Request,
    shop: str = Query(..., min_length=1),
    session_id: str | None = Query(None, alias="sessionId"),
    email: str | None = Query(None),
    store: ChatStore = Depends(get_chat_store),
) -> JSONResponse:
    """Stored conversation for a session id, or the customer's latest session."""
    headers = cors_headers(request)
    if not session_id and not email:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error="sessionId or email is required").model_dump(),
            headers=headers,
        )

    try:
        session = await store.get_history(shop, session_id) if session_id else None
    except SessionOwnershipError:
        logger.warning("history_shop_mismatch", shop=shop, session_id=session_id)
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content=ErrorResponse(error="Forbidden").model_dump(),
            headers=headers,
        )
    if session is None and email:
        session = await store.latest_customer_session(shop, email)

    return JSONResponse(
        content=_history_response(session).model_dump(mode="json", by_alias=True),
        headers=headers,
    )


@router.post("/api/summary", response_model=SummaryResponse)
async def conversation_summary(
    body: SummaryRequest,
    shop_session: ShopSession = Depends(require_shop_session),
    store: ChatStore = Depends(get_chat_store),
    model: ChatModel = Depends(get_chat_model),
) -> JSONResponse:
    """Structured summary of a conversation for the merchant inbox."""
    try:
        session = await store.get_history(shop_session.shop, body.session_id)
    except SessionOwnershipError:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content=ErrorResponse(error="Forbidden").model_dump(),
        )
    if session is None or not session.messages:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ErrorResponse(error="No messages found for this session").model_dump(),
        )

    summary = await model.summarize(session.messages)
    return JSONResponse(
        content=SummaryResponse(summary=summary).model_dump(mode="json", by_alias=True)
    )
