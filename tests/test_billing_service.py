"""
Tests for BillingService.

Unit tests for Checkout and Billing Portal session creation.
"""

from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from billforge.exceptions import (
    PaymentProviderError,
    PaymentProviderNotConfiguredError,
    PlanNotFoundError,
    ResourceNotFoundError,
    SubscriptionExistsError,
    UserNotFoundError,
)
from billforge.models.domain import CheckoutSession
from billforge.services.billing import BillingService
from billforge.services.plans import PlanService
from billforge.services.stripe_provider import StripeProvider
from billforge.services.subscriptions import SubscriptionService

SUCCESS_URL = "https://app.example.com/billing/success"
CANCEL_URL = "https://app.example.com/billing/cancel"


@pytest.fixture
def provider() -> AsyncMock:
    provider = AsyncMock(spec=StripeProvider)
    provider.create_customer.return_value = "cus_created"
    provider.create_checkout_session.return_value = CheckoutSession(
        session_id="cs_1", url="https://checkout.stripe.com/c/cs_1"
    )
    provider.create_billing_portal_session.return_value = "https://billing.stripe.com/p/1"
    return provider


@pytest.fixture
def billing(db_session, provider, price_plan_map) -> BillingService:
    return BillingService(db_session, provider, price_plan_map)


class TestCreateCheckoutSession:
    """Tests for create_checkout_session."""

    async def test_creates_session_for_existing_customer(
        self, billing, db_session, provider, mock_user, plan_factory
    ):
        db_session.get = AsyncMock(return_value=mock_user)
        with (
            patch.object(SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)),
            patch.object(PlanService, "get_active_plan", AsyncMock(return_value=plan_factory("pro"))),
        ):
            checkout = await billing.create_checkout_session(mock_user.id, "pro", SUCCESS_URL, CANCEL_URL)

        assert checkout.session_id == "cs_1"
        provider.create_customer.assert_not_awaited()
        provider.create_checkout_session.assert_awaited_once_with(
            customer_id="cus_test_123",
            price_id="price_pro_test",
            success_url=SUCCESS_URL,
            cancel_url=CANCEL_URL,
            user_id=str(mock_user.id),
            plan_code="pro",
        )

    async def test_creates_customer_when_missing(
        self, billing, db_session, provider, user_factory, plan_factory, result_factory
    ):
        """A user without a Stripe customer gets one linked before checkout."""
        user = user_factory(stripe_customer_id=None)
        db_session.get = AsyncMock(return_value=user)
        db_session.execute = AsyncMock(return_value=result_factory(rowcount=1))
        with (
            patch.object(SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)),
            patch.object(PlanService, "get_active_plan", AsyncMock(return_value=plan_factory("premium"))),
        ):
            await billing.create_checkout_session(user.id, "premium", SUCCESS_URL, CANCEL_URL)

        link = str(db_session.execute.await_args_list[0].args[0])
        assert link.startswith("UPDATE users")
        assert "stripe_customer_id IS NULL" in link
        db_session.execute.assert_awaited_once()
        db_session.commit.assert_awaited_once()
        assert provider.create_checkout_session.call_args.kwargs["customer_id"] == "cus_created"
        assert provider.create_checkout_session.call_args.kwargs["price_id"] == "price_premium_test"

    async def test_concurrently_linked_customer_wins(
        self, billing, db_session, provider, user_factory, plan_factory, result_factory
    ):
        """If another checkout linked a customer first, that customer is used."""
        user = user_factory(stripe_customer_id=None)
        db_session.get = AsyncMock(return_value=user)
        db_session.execute = AsyncMock(
            side_effect=[result_factory(rowcount=0), result_factory(scalar="cus_winner")]
        )
        with (
            patch.object(SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)),
            patch.object(PlanService, "get_active_plan", AsyncMock(return_value=plan_factory("pro"))),
        ):
            await billing.create_checkout_session(user.id, "pro", SUCCESS_URL, CANCEL_URL)

        provider.create_customer.assert_awaited_once()
        assert provider.create_checkout_session.call_args.kwargs["customer_id"] == "cus_winner"

    async def test_no_transaction_open_during_stripe_calls(
        self, tracked_session, provider, user_factory, plan_factory, result_factory, price_plan_map
    ):
        """Lookups' implicit transaction is released before any Stripe request."""
        seen: list[tuple[str, bool]] = []
        user = user_factory(stripe_customer_id=None)
        tracked_session.get.return_value = user
        tracked_session.execute.return_value = result_factory(rowcount=1)

        async def create_customer(*args, **kwargs):
            seen.append(("create_customer", tracked_session.in_transaction()))
            return "cus_created"

        async def create_checkout_session(**kwargs):
            seen.append(("create_checkout_session", tracked_session.in_transaction()))
            return CheckoutSession(session_id="cs_1", url="https://checkout.stripe.com/c/cs_1")

        provider.create_customer.side_effect = create_customer
        provider.create_checkout_session.side_effect = create_checkout_session
        billing = BillingService(tracked_session, provider, price_plan_map)
        with (
            patch.object(SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)),
            patch.object(PlanService, "get_active_plan", AsyncMock(return_value=plan_factory("pro"))),
        ):
            await billing.create_checkout_session(user.id, "pro", SUCCESS_URL, CANCEL_URL)

        assert seen == [("create_customer", False), ("create_checkout_session", False)]

    async def test_existing_subscription_conflicts(
        self, billing, db_session, provider, mock_user, subscription_factory
    ):
        db_session.get = AsyncMock(return_value=mock_user)
        current = subscription_factory(mock_user.id)
        with patch.object(
            SubscriptionService, "get_current_subscription", AsyncMock(return_value=current)
        ):
            with pytest.raises(SubscriptionExistsError):
                await billing.create_checkout_session(mock_user.id, "pro", SUCCESS_URL, CANCEL_URL)

        provider.create_checkout_session.assert_not_awaited()

    async def test_unknown_plan(self, billing, db_session, mock_user):
        db_session.get = AsyncMock(return_value=mock_user)
        with patch.object(
            SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)
        ):
            with pytest.raises(PlanNotFoundError):
                await billing.create_checkout_session(mock_user.id, "gold", SUCCESS_URL, CANCEL_URL)

    async def test_plan_without_price(self, db_session, provider, mock_user, plan_factory):
        """Plans with no configured Stripe price cannot be purchased."""
        db_session.get = AsyncMock(return_value=mock_user)
        billing = BillingService(db_session, provider, {"price_pro_test": "pro"})
        with (
            patch.object(SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)),
            patch.object(PlanService, "get_active_plan", AsyncMock(return_value=plan_factory("premium"))),
        ):
            with pytest.raises(PaymentProviderNotConfiguredError):
                await billing.create_checkout_session(mock_user.id, "premium", SUCCESS_URL, CANCEL_URL)

    async def test_unknown_user(self, billing):
        with pytest.raises(UserNotFoundError):
            await billing.create_checkout_session(uuid4(), "pro", SUCCESS_URL, CANCEL_URL)

    async def test_provider_not_configured(self, db_session, price_plan_map):
        billing = BillingService(db_session, None, price_plan_map)
        with pytest.raises(PaymentProviderNotConfiguredError):
            await billing.create_checkout_session(uuid4(), "pro", SUCCESS_URL, CANCEL_URL)
        db_session.get.assert_not_awaited()

    async def test_customer_creation_failure_persists_nothing(
        self, billing, db_session, provider, user_factory, plan_factory
    ):
        user = user_factory(stripe_customer_id=None)
        db_session.get = AsyncMock(return_value=user)
        provider.create_customer.side_effect = PaymentProviderError("Stripe create_customer failed")
        with (
            patch.object(SubscriptionService, "get_current_subscription", AsyncMock(return_value=None)),
            patch.object(PlanService, "get_active_plan", AsyncMock(return_value=plan_factory("pro"))),
        ):
            with pytest.raises(PaymentProviderError):
                await billing.create_checkout_session(user.id, "pro", SUCCESS_URL, CANCEL_URL)

        assert user.stripe_customer_id is None
        db_session.commit.assert_not_awaited()


class TestBillingPortal:
    """Tests for create_billing_portal_session."""

    async def test_returns_portal_url(self, billing, db_session, provider, mock_user):
        db_session.get = AsyncMock(return_value=mock_user)

        url = await billing.create_billing_portal_session(mock_user.id, "https://app.example.com")

        assert url == "https://billing.stripe.com/p/1"
        provider.create_billing_portal_session.assert_awaited_once_with(
            "cus_test_123", "https://app.example.com"
        )

    async def test_portal_call_outside_transaction(
        self, tracked_session, provider, mock_user, price_plan_map
    ):
        seen: list[bool] = []
        tracked_session.get.return_value = mock_user

        async def create_portal(customer_id, return_url):
            seen.append(tracked_session.in_transaction())
            return "https://billing.stripe.com/p/1"

        provider.create_billing_portal_session.side_effect = create_portal
        billing = BillingService(tracked_session, provider, price_plan_map)

        await billing.create_billing_portal_session(mock_user.id, "https://app.example.com")

        assert seen == [False]

    async def test_user_without_customer(self, billing, db_session, user_factory):
        user = user_factory(stripe_customer_id=None)
        db_session.get = AsyncMock(return_value=user)

        with pytest.raises(ResourceNotFoundError):
            await billing.create_billing_portal_session(user.id, "https://app.example.com")
