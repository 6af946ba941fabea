"""
Plan Service - Read access to the subscription plan catalogue.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billforge.db.models import SubscriptionPlan
from billforge.exceptions import PlanNotFoundError


class PlanService:
    """Lists and looks up active plans."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize plan service with database session."""
        self.session = session

    async def list_active_plans(self) -> list[SubscriptionPlan]:
        """Active plans, cheapest first."""
        stmt = (
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.price_cents.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_plan(self, plan_code: str) -> SubscriptionPlan:
        """
        Get an active plan by code.

        Raises:
            PlanNotFoundError: Unknown or inactive plan
        """
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.code == plan_code, SubscriptionPlan.is_active.is_(True)
        )
        result = await self.session.execute(stmt)
        plan = result.scalar_one_or_none()
        if plan is None:
            raise PlanNotFoundError(plan_code)
        return plan
