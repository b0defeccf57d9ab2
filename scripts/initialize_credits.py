#!/usr/bin/env python3
"""
Initialize Credits Script

Seeds the plan catalogue and opens a credit account on the default plan for
every shop that does not have one yet. Shops are taken from the command line,
or from existing chat sessions when none are given.

Usage:
    python scripts/initialize_credits.py
    python scripts/initialize_credits.py my-shop.myshopify.com other.myshopify.com
"""

import argparse
import asyncio
import sys

import structlog
from sqlalchemy import select

from shopchat.config import settings
from shopchat.db.models import ChatSession, MerchantCredits
from shopchat.db.session import create_engine_from_settings, create_session_factory
from shopchat.observability.logging import setup_logging
from shopchat.services.credits import REASON_CHECK_FAILED, CreditService

logger = structlog.get_logger(__name__)


async def find_shops_without_account(session_factory) -> list[str]:
    """Shops that have chat sessions but no credit account."""
    async with session_factory() as session:
        result = await session.execute(
            select(ChatSession.shop)
            .distinct()
            .where(ChatSession.shop.not_in(select(MerchantCredits.shop)))
            .order_by(ChatSession.shop)
        )
        return list(result.scalars().all())


async def initialize(shops: list[str]) -> int:
    """Seed plans and accounts. Returns the process exit code."""
    engine = create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)
    credits = CreditService(
        session_factory,
        default_plan_name=settings.default_plan_name,
        default_monthly_credits=settings.default_monthly_credits,
    )

    try:
        plans = await credits.create_default_plans()
        logger.info("plans_seeded", count=plans)

        if not shops:
            shops = await find_shops_without_account(session_factory)
        logger.info("initializing_accounts", shops=len(shops))

        failed = 0
        for shop in shops:
            # check_availability opens the account when it is missing
            availability = await credits.check_availability(shop)
            if availability.allowed or availability.reason != REASON_CHECK_FAILED:
                logger.info("account_ready", shop=shop, remaining=availability.remaining)
            else:
                failed += 1
                logger.error("account_init_failed", shop=shop)
    finally:
        await engine.dispose()

    logger.info("initialize_credits_complete", shops=len(shops), failed=failed)
    return 1 if failed else 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Seed plans and merchant credit accounts")
    parser.add_argument("shops", nargs="*", help="Shop domains to initialize")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(initialize(args.shops)))


if __name__ == "__main__":
    main()
