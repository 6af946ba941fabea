#!/usr/bin/env python3
"""
Seed the subscription plan catalogue.

Upserts the free, pro and premium plans by code. Safe to run repeatedly:
existing plans have their name, description, price and interval refreshed.

Usage:
    python3 -m scripts.seed_plans

    # Show what would change without writing
    python3 -m scripts.seed_plans --dry-run
"""

import argparse
import asyncio
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billforge.db.models import SubscriptionPlan
from billforge.db.session import close_engines, get_write_session, unit_of_work
from billforge.models.api import BillingInterval
from billforge.observability import get_logger, setup_logging

logger = get_logger("billforge.scripts.seed_plans")


@dataclass(frozen=True)
class PlanSeed:
    """Catalogue entry to upsert."""

    code: str
    name: str
    description: str
    price_cents: int
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTH


PLANS = (
    PlanSeed("free", "Free", "Basic access at no cost", 0),
    PlanSeed("pro", "Pro", "Reports and priority features", 999),
    PlanSeed("premium", "Premium", "Everything in Pro plus premium support", 1999),
)


async def _apply_seeds(session: AsyncSession) -> int:
    """Stage inserts/updates for PLANS; returns the number of plans changed."""
    changed = 0
    for seed in PLANS:
        result = await session.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.code == seed.code)
        )
        plan = result.scalar_one_or_none()

        if plan is None:
            logger.info("plan_created", code=seed.code, price_cents=seed.price_cents)
            session.add(
                SubscriptionPlan(
                    code=seed.code,
                    name=seed.name,
                    description=seed.description,
                    price_cents=seed.price_cents,
                    currency=seed.currency,
                    interval=seed.interval,
                    is_active=True,
                )
            )
            changed += 1
            continue

        current = (
            plan.name,
            plan.description,
            plan.price_cents,
            plan.currency,
            plan.interval,
            plan.is_active,
        )
        wanted = (seed.name, seed.description, seed.price_cents, seed.currency, seed.interval, True)
        if current != wanted:
            logger.info("plan_updated", code=seed.code, price_cents=seed.price_cents)
            plan.name = seed.name
            plan.description = seed.description
            plan.price_cents = seed.price_cents
            plan.currency = seed.currency
            plan.interval = seed.interval
            plan.is_active = True
            changed += 1

    return changed


async def seed_plans(dry_run: bool = False) -> int:
    """Upsert PLANS in one transaction; a dry run rolls everything back."""
    async with get_write_session() as session:
        if dry_run:
            changed = await _apply_seeds(session)
            await session.rollback()
            logger.info("seed_plans_dry_run", would_change=changed)
            return changed

        async with unit_of_work(session):
            changed = await _apply_seeds(session)

    logger.info("seed_plans_complete", changed=changed)
    return changed


async def _run(dry_run: bool) -> None:
    try:
        await seed_plans(dry_run=dry_run)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed BillForge subscription plans")
    parser.add_argument(
        "--dry-run", action="store_true", help="Don't write, just show what would change"
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(_run(args.dry_run))


if __name__ == "__main__":
    main()
