"""
Credit Service - Per-shop monthly credit allowance and usage accounting.

NO DICTIONARIES - All operations use strongly typed domain models.
Availability denials are returned as data; usage recording never raises.
"""

import calendar
import math
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from shopchat.db.models import MerchantCredits, MerchantPlan, UsageLog
from shopchat.exceptions import AccountNotFoundError, PersistenceError
from shopchat.models.api import RequestType
from shopchat.models.domain import (
    CreditAvailability,
    CreditStatus,
    PlanData,
    UsageMetrics,
    UsageStats,
)
from shopchat.observability import metrics

logger = get_logger(__name__)

REASON_AI_DISABLED = "AI manually disabled by merchant"
REASON_CREDITS_EXHAUSTED = "Credits exhausted for current billing period"
REASON_CHECK_FAILED = "Credit check failed"

USAGE_WINDOW = timedelta(days=30)
USAGE_SAMPLE_SIZE = 100
TOKENS_PER_CREDIT = 1000

DEFAULT_PLANS: tuple[PlanData, ...] = (
    PlanData(
        name="Free",
        monthly_credits=1000,
        max_concurrent_chats=2,
        price=0,
        features={
            "aiResponses": True,
            "basicAnalytics": True,
            "emailSupport": False,
            "customBranding": False,
        },
    ),
    PlanData(
        name="Basic",
        monthly_credits=5000,
        max_concurrent_chats=10,
        price=29,
        features={
            "aiResponses": True,
            "basicAnalytics": True,
            "emailSupport": True,
            "customBranding": False,
            "prioritySupport": False,
        },
    ),
    PlanData(
        name="Pro",
        monthly_credits=20000,
        max_concurrent_chats=50,
        price=99,
        features={
            "aiResponses": True,
            "advancedAnalytics": True,
            "emailSupport": True,
            "customBranding": True,
            "prioritySupport": True,
            "customIntegrations": True,
        },
    ),
    PlanData(
        name="Enterprise",
        monthly_credits=100000,
        max_concurrent_chats=200,
        price=299,
        features={
            "aiResponses": True,
            "advancedAnalytics": True,
            "emailSupport": True,
            "customBranding": True,
            "prioritySupport": True,
            "customIntegrations": True,
            "dedicatedSupport": True,
            "sla": True,
        },
    ),
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the length of that month."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def credits_for_tokens(tokens: int) -> int:
    """Credits charged for a model reply: one per started thousand tokens, at least one."""
    return max(1, math.ceil(max(tokens, 0) / TOKENS_PER_CREDIT))


def evaluate_account(account: MerchantCredits) -> CreditAvailability:
    """Availability for an account whose period is current."""
    if not account.ai_enabled:
        return CreditAvailability(
            allowed=False,
            remaining=max(account.remaining_credits, 0),
            reason=REASON_AI_DISABLED,
            should_handoff=True,
        )
    if account.remaining_credits <= 0:
        return CreditAvailability(
            allowed=False,
            remaining=0,
            reason=REASON_CREDITS_EXHAUSTED,
            should_handoff=True,
        )
    return CreditAvailability(allowed=True, remaining=account.remaining_credits)


def summarize_usage(logs: list[UsageLog]) -> UsageStats:
    """Aggregate usage statistics over a sample of logs."""
    if not logs:
        return UsageStats()

    ai_chats = keyword_responses = handoffs = 0
    total_tokens = total_response_time = success_count = 0
    for log in logs:
        if log.request_type == RequestType.AI_CHAT:
            ai_chats += 1
        elif log.request_type == RequestType.KEYWORD_RESPONSE:
            keyword_responses += 1
        elif log.request_type == RequestType.MANUAL_HANDOFF:
            handoffs += 1
        total_tokens += log.tokens_used or 0
        total_response_time += log.response_time_ms or 0
        if log.was_successful:
            success_count += 1

    return UsageStats(
        ai_chats=ai_chats,
        keyword_responses=keyword_responses,
        handoffs=handoffs,
        total_tokens=total_tokens,
        average_response_time=round(total_response_time / len(logs)),
        success_rate=round(success_count / len(logs) * 100),
    )


class CreditService:
    """
    Credit ledger for storefront AI chat.

    Each public operation runs in its own session so a failed chat turn can
    still record its usage entry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_plan_name: str = "Free",
        default_monthly_credits: int = 1000,
        usage_message_max_chars: int = 100,
    ) -> None:
        """Initialize credit service with a session factory."""
        self.session_factory = session_factory
        self.default_plan_name = default_plan_name
        self.default_monthly_credits = default_monthly_credits
        self.usage_message_max_chars = usage_message_max_chars

    async def check_availability(self, shop: str) -> CreditAvailability:
        """
        Check whether the shop may run an AI turn.

        Lazily creates the account on the default plan and rolls an expired
        billing period over before evaluating. Never raises: a storage failure
        is reported as a denial.
        """
        try:
            async with self.session_factory() as session:
                account = await self._get_or_create_account(session, shop)
                if _utc_now() > account.period_end:
                    account = await self._reset_period(session, account)
                await session.commit()
                availability = evaluate_account(account)
        except (SQLAlchemyError, OSError) as e:
            logger.error("credit_check_failed", shop=shop, error=str(e))
            metrics.record_credit_check(allowed=False, reason="check_failed")
            return CreditAvailability(
                allowed=False,
                remaining=0,
                reason=REASON_CHECK_FAILED,
                should_handoff=True,
            )

        metrics.record_credit_check(
            allowed=availability.allowed,
            reason=availability.reason or "ok",
        )
        if not availability.allowed:
            logger.info(
                "credit_check_denied",
                shop=shop,
                reason=availability.reason,
                remaining=availability.remaining,
            )
        return availability

    async def record_usage(
        self,
        shop: str,
        usage: UsageMetrics,
        session_id: str | None = None,
        customer_id: str | None = None,
        message: str | None = None,
    ) -> None:
        """
        Append a usage log entry and, for successful requests, debit credits.

        The debit is a single UPDATE with column arithmetic so concurrent
        turns for the same shop cannot lose increments.
        """
        try:
            async with self.session_factory() as session:
                account = await self._find_account(session, shop)
                if account is None:
                    logger.warning("usage_record_no_account", shop=shop)
                    return

                is_new_user = False
                if usage.was_successful and customer_id:
                    is_new_user = not await self._customer_seen(session, account, customer_id)

                session.add(
                    UsageLog(
                        merchant_credits_id=account.id,
                        shop=shop,
                        request_type=usage.request_type,
                        credits_used=usage.credits_used,
                        session_id=session_id,
                        customer_id=customer_id,
                        user_message=(
                            message[: self.usage_message_max_chars] if message else None
                        ),
                        response_time_ms=usage.response_time_ms,
                        tokens_used=usage.tokens_used,
                        was_successful=usage.was_successful,
                        error_message=usage.error_message,
                    )
                )

                debit = 0
                if usage.was_successful:
                    debit = max(usage.credits_used, 0)
                    # Both SET clauses read the pre-update row, so the clamp
                    # keeps remaining = total - used under concurrent debits.
                    charged = func.least(debit, MerchantCredits.remaining_credits)
                    await session.execute(
                        update(MerchantCredits)
                        .where(MerchantCredits.id == account.id)
                        .values(
                            used_credits=MerchantCredits.used_credits + charged,
                            remaining_credits=MerchantCredits.remaining_credits - charged,
                            total_requests=MerchantCredits.total_requests + 1,
                            total_users=MerchantCredits.total_users + (1 if is_new_user else 0),
                        )
                    )

                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "usage_record_failed",
                shop=shop,
                request_type=usage.request_type.value,
                error=str(e),
            )
            return

        metrics.record_usage(
            request_type=usage.request_type.value,
            success=usage.was_successful,
            credits_used=debit,
        )
        logger.info(
            "usage_recorded",
            shop=shop,
            request_type=usage.request_type.value,
            credits_used=debit,
            success=usage.was_successful,
            session_id=session_id,
        )

    async def get_status(self, shop: str) -> CreditStatus:
        """
        Snapshot of the shop's credits, plan, settings and recent usage.

        Raises:
            AccountNotFoundError: Account could not be created or loaded
        """
        availability = await self.check_availability(shop)

        async with self.session_factory() as session:
            account = await self._find_account(session, shop)
            if account is None:
                raise AccountNotFoundError(shop)

            stmt = (
                select(UsageLog)
                .where(
                    UsageLog.merchant_credits_id == account.id,
                    UsageLog.created_at >= _utc_now() - USAGE_WINDOW,
                )
                .order_by(UsageLog.created_at.desc())
                .limit(USAGE_SAMPLE_SIZE)
            )
            result = await session.execute(stmt)
            logs = list(result.scalars().all())

            return CreditStatus(
                shop=account.shop,
                total_credits=account.total_credits,
                used_credits=account.used_credits,
                remaining_credits=account.remaining_credits,
                period_start=account.period_start,
                period_end=account.period_end,
                plan=self._plan_to_domain(account.plan),
                ai_enabled=account.ai_enabled,
                auto_recharge=account.auto_recharge,
                total_requests=account.total_requests,
                total_users=account.total_users,
                usage=summarize_usage(logs),
                availability=availability,
            )

    async def set_ai_enabled(self, shop: str, enabled: bool) -> bool:
        """Toggle AI replies for the shop, creating the account if needed."""
        try:
            async with self.session_factory() as session:
                account = await self._get_or_create_account(session, shop)
                account.ai_enabled = enabled
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("set_ai_enabled_failed", shop=shop, error=str(e))
            raise PersistenceError(f"could not update AI setting for {shop}") from e

        logger.info("ai_enabled_updated", shop=shop, enabled=enabled)
        return enabled

    async def update_settings(self, shop: str, auto_recharge: bool | None = None) -> CreditStatus:
        """
        Update merchant credit settings.

        Raises:
            AccountNotFoundError: Shop has no credit account
        """
        async with self.session_factory() as session:
            account = await self._find_account(session, shop)
            if account is None:
                raise AccountNotFoundError(shop)
            if auto_recharge is not None:
                account.auto_recharge = auto_recharge
            await session.commit()

        logger.info("credit_settings_updated", shop=shop, auto_recharge=auto_recharge)
        return await self.get_status(shop)

    async def create_default_plans(self) -> int:
        """Upsert the plan catalogue. Returns the number of plans written."""
        async with self.session_factory() as session:
            for plan in DEFAULT_PLANS:
                stmt = pg_insert(MerchantPlan).values(
                    name=plan.name,
                    monthly_credits=plan.monthly_credits,
                    max_concurrent_chats=plan.max_concurrent_chats,
                    price=Decimal(plan.price),
                    features=plan.features,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[MerchantPlan.name],
                    set_={
                        "monthly_credits": stmt.excluded.monthly_credits,
                        "max_concurrent_chats": stmt.excluded.max_concurrent_chats,
                        "price": stmt.excluded.price,
                        "features": stmt.excluded.features,
                        "updated_at": _utc_now(),
                    },
                )
                await session.execute(stmt)
            await session.commit()

        logger.info("default_plans_created", count=len(DEFAULT_PLANS))
        return len(DEFAULT_PLANS)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_account(self, session: AsyncSession, shop: str) -> MerchantCredits | None:
        """Find the credit account for a shop."""
        stmt = select(MerchantCredits).where(MerchantCredits.shop == shop)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_create_account(self, session: AsyncSession, shop: str) -> MerchantCredits:
        """Get the shop's account or create it on the default plan."""
        account = await self._find_account(session, shop)
        if account is not None:
            return account

        plan = await self._get_or_create_default_plan(session)
        now = _utc_now()
        new_account = MerchantCredits(
            shop=shop,
            plan_id=plan.id,
            plan=plan,
            total_credits=plan.monthly_credits,
            used_credits=0,
            remaining_credits=plan.monthly_credits,
            period_start=now,
            period_end=add_one_month(now),
            ai_enabled=True,
            auto_recharge=True,
            total_requests=0,
            total_users=0,
        )
        session.add(new_account)

        try:
            await session.flush()
        except IntegrityError:
            # Race condition - account created by another request
            await session.rollback()
            account = await self._find_account(session, shop)
            if account is None:
                raise PersistenceError(f"credit account creation failed for {shop}")
            return account

        logger.info("credit_account_created", shop=shop, plan=plan.name)
        return new_account

    async def _get_or_create_default_plan(self, session: AsyncSession) -> MerchantPlan:
        """Load the default plan, creating it when the catalogue is empty."""
        stmt = select(MerchantPlan).where(MerchantPlan.name == self.default_plan_name)
        result = await session.execute(stmt)
        plan = result.scalar_one_or_none()
        if plan is not None:
            return plan

        template = next((p for p in DEFAULT_PLANS if p.name == self.default_plan_name), None)
        plan = MerchantPlan(
            name=self.default_plan_name,
            monthly_credits=self.default_monthly_credits,
            max_concurrent_chats=template.max_concurrent_chats if template else 2,
            price=Decimal(template.price if template else 0),
            features=dict(template.features) if template else {},
        )
        session.add(plan)
        await session.flush()
        return plan

    async def _reset_period(
        self, session: AsyncSession, account: MerchantCredits
    ) -> MerchantCredits:
        """
        Roll an expired billing period over.

        The UPDATE is guarded on period_end so two concurrent checks reset once.
        """
        now = _utc_now()
        monthly = account.plan.monthly_credits
        await session.execute(
            update(MerchantCredits)
            .where(
                MerchantCredits.id == account.id,
                MerchantCredits.period_end < now,
            )
            .values(
                total_credits=monthly,
                used_credits=0,
                remaining_credits=monthly,
                period_start=now,
                period_end=add_one_month(now),
                total_requests=0,
                total_users=0,
            )
        )
        await session.refresh(account)
        logger.info("billing_period_reset", shop=account.shop, monthly_credits=monthly)
        return account

    async def _customer_seen(
        self, session: AsyncSession, account: MerchantCredits, customer_id: str
    ) -> bool:
        """True when the customer has any earlier log on this account, in any period."""
        stmt = (
            select(UsageLog.id)
            .where(
                UsageLog.merchant_credits_id == account.id,
                UsageLog.customer_id == customer_id,
            )
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    def _plan_to_domain(self, plan: MerchantPlan) -> PlanData:
        """Convert ORM plan to domain model."""
        return PlanData(
            name=plan.name,
            monthly_credits=plan.monthly_credits,
            max_concurrent_chats=plan.max_concurrent_chats,
            price=float(plan.price),
            features=dict(plan.features or {}),
        )
