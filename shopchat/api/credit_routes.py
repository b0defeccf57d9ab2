"""
Credit API routes - Merchant credit status and settings.

All endpoints require a Shopify admin session token.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from shopchat.api.dependencies import ShopSession, get_credit_service, require_shop_session
from shopchat.exceptions import AccountNotFoundError, PersistenceError
from shopchat.models.api import (
    CreditActionRequest,
    CreditActionResponse,
    CreditsPayload,
    CreditStatusResponse,
    PlanPayload,
    SettingsPayload,
    StatusPayload,
    UsagePayload,
)
from shopchat.models.domain import CreditStatus
from shopchat.services.credits import CreditService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/credits", tags=["credits"])

ACTION_TOGGLE_AI = "toggle_ai"
ACTION_UPDATE_SETTINGS = "update_settings"
ACTION_INITIALIZE_PLANS = "initialize_plans"


def status_to_response(credit_status: CreditStatus) -> CreditStatusResponse:
    """Convert a domain credit status to the API response."""
    return CreditStatusResponse(
        credits=CreditsPayload(
            total=credit_status.total_credits,
            used=credit_status.used_credits,
            remaining=credit_status.remaining_credits,
            period_start=credit_status.period_start,
            period_end=credit_status.period_end,
        ),
        plan=PlanPayload(
            name=credit_status.plan.name,
            monthly_credits=credit_status.plan.monthly_credits,
            max_concurrent_chats=credit_status.plan.max_concurrent_chats,
            price=credit_status.plan.price,
            features=credit_status.plan.features,
        ),
        settings=SettingsPayload(
            ai_enabled=credit_status.ai_enabled,
            auto_recharge=credit_status.auto_recharge,
        ),
        usage=UsagePayload(
            total_requests=credit_status.total_requests,
            total_users=credit_status.total_users,
            ai_chats=credit_status.usage.ai_chats,
            keyword_responses=credit_status.usage.keyword_responses,
            handoffs=credit_status.usage.handoffs,
            total_tokens=credit_status.usage.total_tokens,
            average_response_time=credit_status.usage.average_response_time,
            success_rate=credit_status.usage.success_rate,
        ),
        status=StatusPayload(
            can_use_ai=credit_status.availability.allowed,
            reason=credit_status.availability.reason,
            should_handoff=credit_status.availability.should_handoff,
        ),
    )


@router.get("", response_model=CreditStatusResponse, response_model_by_alias=True)
async def get_credit_status(
    shop_session: ShopSession = Depends(require_shop_session),
    credits: CreditService = Depends(get_credit_service),
) -> CreditStatusResponse:
    """
    Credit status and 30-day usage analytics for the merchant's shop.

    Creates the account on the free plan on first visit.
    """
    try:
        credit_status = await credits.get_status(shop_session.shop)
    except AccountNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No credit record found. Please contact support.",
        ) from e

    return status_to_response(credit_status)


@router.post("", response_model=CreditActionResponse, response_model_by_alias=True)
async def credit_action(
    body: CreditActionRequest,
    shop_session: ShopSession = Depends(require_shop_session),
    credits: CreditService = Depends(get_credit_service),
) -> CreditActionResponse:
    """
    Merchant credit actions.

    - toggle_ai: {enabled}
    - update_settings: {autoRecharge}
    - initialize_plans: upsert the plan catalogue
    """
    shop = shop_session.shop
    logger.info("credit_action_requested", shop=shop, action=body.action)

    try:
        if body.action == ACTION_TOGGLE_AI:
            if body.enabled is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST, detail="enabled is required"
                )
            enabled = await credits.set_ai_enabled(shop, body.enabled)
            return CreditActionResponse(
                message=f"AI responses {'enabled' if enabled else 'disabled'}",
                ai_enabled=enabled,
            )

        if body.action == ACTION_UPDATE_SETTINGS:
            credit_status = await credits.update_settings(shop, auto_recharge=body.auto_recharge)
            return CreditActionResponse(
                message="Settings updated successfully",
                ai_enabled=credit_status.ai_enabled,
            )

        if body.action == ACTION_INITIALIZE_PLANS:
            await credits.create_default_plans()
            return CreditActionResponse(message="Plans initialized")
    except AccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except PersistenceError as e:
        logger.error("credit_action_failed", shop=shop, action=body.action, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update settings",
        ) from e

    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid action")
