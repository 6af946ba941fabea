"""
Billing Service - Stripe Checkout and Billing Portal sessions.

NO DICTIONARIES - All operations use strongly typed models.

Stripe calls are made outside any database transaction: the read transaction
opened by the lookups is released first, and only the resulting customer
mapping is persisted, in its own short unit of work.
"""

from collections.abc import Mapping
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.db.models import User
from billforge.db.session import release_connection, unit_of_work
from billforge.exceptions import (
    PaymentProviderNotConfiguredError,
    ResourceNotFoundError,
    SubscriptionExistsError,
    UserNotFoundError,
)
from billforge.models.domain import CheckoutSession
from billforge.services.payment_provider import PaymentProvider
from billforge.services.plans import PlanService
from billforge.services.subscriptions import SubscriptionService

logger = get_logger(__name__)


class BillingService:
    """Creates hosted Stripe sessions for upgrading and managing a plan."""

    def __init__(
        self,
        session: AsyncSession,
        provider: PaymentProvider | None,
        price_plan_map: Mapping[str, str],
    ) -> None:
        """Initialize with session, Stripe provider (None if unconfigured) and price map."""
        self.session = session
        self.provider = provider
        self.price_plan_map = dict(price_plan_map)

    async def create_checkout_session(
        self,
        user_id: UUID,
        plan_code: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a subscription Checkout session for a user.

        Raises:
            PaymentProviderNotConfiguredError: Stripe not configured or plan has no price
            UserNotFoundError: User doesn't exist
            SubscriptionExistsError: User already holds an occupying subscription
            PlanNotFoundError: Unknown or inactive plan
            PaymentProviderError: Stripe API failure
        """
        provider = self._require_provider()
        user = await self._get_user(user_id)

        current = await SubscriptionService(self.session).get_current_subscription(user_id)
        if current is not None:
            raise SubscriptionExistsError(user_id, current.id)

        plan = await PlanService(self.session).get_active_plan(plan_code)
        price_id = self._price_id_for_plan(plan.code)
        if price_id is None:
            raise PaymentProviderNotConfiguredError(f"No Stripe price configured for {plan.code}")

        await release_connection(self.session)

        customer_id = await self._ensure_customer(provider, user)
        checkout = await provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            user_id=str(user.id),
            plan_code=plan.code,
        )
        logger.info(
            "checkout_session_created",
            user_id=str(user.id),
            plan_code=plan.code,
            checkout_session_id=checkout.session_id,
        )
        return checkout

    async def create_billing_portal_session(self, user_id: UUID, return_url: str) -> str:
        """
        Create a Billing Portal session and return its URL.

        Raises:
            PaymentProviderNotConfiguredError: Stripe not configured
            UserNotFoundError: User doesn't exist
            ResourceNotFoundError: User has no Stripe customer yet
            PaymentProviderError: Stripe API failure
        """
        provider = self._require_provider()
        user = await self._get_user(user_id)
        customer_id = user.stripe_customer_id
        if not customer_id:
            raise ResourceNotFoundError("Stripe customer", str(user_id))

        await release_connection(self.session)
        return await provider.create_billing_portal_session(customer_id, return_url)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None:
            raise PaymentProviderNotConfiguredError()
        return self.provider

    def _price_id_for_plan(self, plan_code: str) -> str | None:
        for price_id, code in self.price_plan_map.items():
            if code == plan_code:
                return price_id
        return None

    async def _get_user(self, user_id: UUID) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _ensure_customer(self, provider: PaymentProvider, user: User) -> str:
        """
        Return the user's Stripe customer, creating and linking it if missing.

        The link is a conditional UPDATE so a concurrent checkout that linked
        its own customer first keeps it; the stored customer is returned.
        """
        if user.stripe_customer_id:
            return user.stripe_customer_id

        created_id = await provider.create_customer(user.email, user.name, str(user.id))
        async with unit_of_work(self.session):
            result = await self.session.execute(
                update(User)
                .where(User.id == user.id, User.stripe_customer_id.is_(None))
                .values(stripe_customer_id=created_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:  # type: ignore[attr-defined]
                return created_id

            stored = await self.session.execute(
                select(User.stripe_customer_id).where(User.id == user.id)
            )
            winner = stored.scalar_one_or_none()

        logger.warning(
            "stripe_customer_link_lost",
            user_id=str(user.id),
            created_customer_id=created_id,
            linked_customer_id=winner,
        )
        return winner or created_id
