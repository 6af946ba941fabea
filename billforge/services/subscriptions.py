"""
Subscription Service - Roles, current subscription, manual assignment.

NO DICTIONARIES - All operations use strongly typed models.
"""

import calendar
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.db.models import Subscription, SubscriptionPlan, User
from billforge.db.session import unit_of_work
from billforge.exceptions import InvalidPlanError, PlanNotFoundError, UserNotFoundError
from billforge.models.api import (
    OCCUPYING_STATUSES,
    ROLE_RANK,
    AppRole,
    BillingInterval,
    SubscriptionStatus,
)
from billforge.observability.metrics import metrics
from billforge.services.audit_log import AuditLogService

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_interval(start: datetime, interval: BillingInterval) -> datetime:
    """Advance by one billing interval, clamping to the last day of month."""
    months = 12 if interval == BillingInterval.YEAR else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def role_for_plan_code(plan_code: str | None) -> AppRole:
    """Map a plan code to an access role; unknown codes grant nothing."""
    try:
        return AppRole(plan_code) if plan_code else AppRole.FREE
    except ValueError:
        return AppRole.FREE


class SubscriptionService:
    """Subscription queries and manual (non-Stripe) assignment."""

    def __init__(self, session: AsyncSession, audit_log: AuditLogService | None = None) -> None:
        """Initialize subscription service with database session."""
        self.session = session
        self.audit_log = audit_log or AuditLogService(session)

    @staticmethod
    def has_required_role(user_role: AppRole, required_role: AppRole) -> bool:
        """Check role hierarchy: free < pro < premium."""
        return ROLE_RANK[user_role] >= ROLE_RANK[required_role]

    async def get_current_subscription(self, user_id: UUID) -> Subscription | None:
        """Get the user's occupying subscription, if any."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(sorted(OCCUPYING_STATUSES)),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_role_and_subscription(
        self, user_id: UUID
    ) -> tuple[AppRole, Subscription | None]:
        """Resolve the user's role from their current subscription's plan."""
        subscription = await self.get_current_subscription(user_id)
        if subscription is None:
            return AppRole.FREE, None
        return role_for_plan_code(subscription.plan.code), subscription

    async def create_manual_subscription(self, user_id: UUID, plan_code: str) -> Subscription:
        """
        Assign a plan without Stripe.

        Cancels every occupying subscription of the user and inserts a new
        ACTIVE one for a single billing interval, in one transaction.

        Raises:
            InvalidPlanError: plan_code is "free" (checked before any storage access)
            PlanNotFoundError: Unknown or inactive plan
            UserNotFoundError: User doesn't exist
        """
        if plan_code == AppRole.FREE.value:
            raise InvalidPlanError(plan_code, "free plan cannot be assigned as a subscription")

        now = _utc_now()
        async with unit_of_work(self.session):
            user = await self._lock_user(user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            plan = await self._find_active_plan(plan_code)
            if plan is None:
                raise PlanNotFoundError(plan_code)

            others = await self._find_occupying_subscriptions(user_id)
            for other in others:
                other.status = SubscriptionStatus.CANCELED
                other.canceled_at = now
            if others:
                await self.session.flush()

            subscription = Subscription(
                id=uuid4(),
                user_id=user_id,
                plan_id=plan.id,
                stripe_subscription_id=None,
                status=SubscriptionStatus.ACTIVE,
                current_period_start=now,
                current_period_end=add_interval(now, plan.interval),
                cancel_at_period_end=False,
            )
            subscription.plan = plan
            self.session.add(subscription)

            self.audit_log.record(
                action="subscription.manual.created",
                resource_type="subscription",
                resource_id=subscription.id,
                user_id=user_id,
                details={"plan_code": plan.code, "superseded": len(others)},
            )

        metrics.record_superseded("manual", len(others))
        logger.info(
            "manual_subscription_created",
            user_id=str(user_id),
            subscription_id=str(subscription.id),
            plan_code=plan.code,
            superseded=len(others),
        )
        return subscription

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock_user(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        stmt = select(User).where(User.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_active_plan(self, plan_code: str) -> SubscriptionPlan | None:
        """Find active plan by code."""
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.code == plan_code, SubscriptionPlan.is_active.is_(True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_occupying_subscriptions(self, user_id: UUID) -> list[Subscription]:
        """Find (and lock) every occupying subscription of the user."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(sorted(OCCUPYING_STATUSES)),
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
