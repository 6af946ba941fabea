"""
Tests for StripeProvider and Stripe payload decoding.

Webhook signatures are computed the same way Stripe does (HMAC-SHA256 over
"{timestamp}.{payload}"); SDK calls are patched on the stripe module.
"""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
import stripe

from billforge.exceptions import (
    PaymentProviderError,
    UnprocessableEventError,
    WebhookVerificationError,
)
from billforge.services.payment_provider import (
    CheckoutCompletedEvent,
    IgnoredEvent,
    InvoiceChangedEvent,
    SubscriptionChangedEvent,
)
from billforge.services.stripe_provider import (
    StripeProvider,
    decode_event,
    snapshot_invoice,
    snapshot_subscription,
)

WEBHOOK_SECRET = "whsec_unit_test_secret"


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def subscription_object(**overrides):
    obj = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "current_period_start": 1_790_000_000,
        "current_period_end": 1_792_592_000,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "trial_end": None,
        "items": {"data": [{"price": {"id": "price_pro_test"}}]},
    }
    obj.update(overrides)
    return obj


def event_payload(event_type: str, obj: dict, event_id: str = "evt_123") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def provider() -> StripeProvider:
    return StripeProvider(api_key="sk_test_unit", webhook_secret=WEBHOOK_SECRET)


class TestSnapshots:
    """Tests for Stripe object decoding."""

    def test_subscription_snapshot(self):
        snapshot = snapshot_subscription(subscription_object())

        assert snapshot.subscription_id == "sub_123"
        assert snapshot.customer_id == "cus_123"
        assert snapshot.price_id == "price_pro_test"
        assert snapshot.status == "active"
        assert snapshot.current_period_start == datetime.fromtimestamp(1_790_000_000, UTC)
        assert snapshot.canceled_at is None

    def test_period_read_from_item_when_missing_on_subscription(self):
        """Newer API versions carry the period on the subscription item."""
        obj = subscription_object(current_period_start=None, current_period_end=None)
        obj["items"]["data"][0]["current_period_end"] = 1_792_592_000

        snapshot = snapshot_subscription(obj)

        assert snapshot.current_period_end == datetime.fromtimestamp(1_792_592_000, UTC)

    def test_expanded_customer_normalized_to_id(self):
        snapshot = snapshot_subscription(subscription_object(customer={"id": "cus_999"}))
        assert snapshot.customer_id == "cus_999"

    def test_subscription_without_id_rejected(self):
        with pytest.raises(ValueError):
            snapshot_subscription(subscription_object(id=None))

    def test_invoice_snapshot(self):
        snapshot = snapshot_invoice(
            {
                "id": "in_1",
                "customer": "cus_123",
                "parent": {"subscription_details": {"subscription": "sub_123"}},
                "payment_intent": None,
                "status": "paid",
                "amount_due": 999,
                "amount_paid": 999,
                "currency": "usd",
                "created": 1_790_000_000,
            }
        )

        assert snapshot.subscription_id == "sub_123"
        assert snapshot.currency == "USD"
        assert snapshot.amount_paid_cents == 999
        assert snapshot.hosted_invoice_url is None


class TestDecodeEvent:
    """Tests for event variant selection."""

    @pytest.mark.parametrize(
        "event_type,action",
        [
            ("customer.subscription.created", "created"),
            ("customer.subscription.updated", "updated"),
            ("customer.subscription.deleted", "deleted"),
        ],
    )
    def test_subscription_events(self, event_type, action):
        event = decode_event(event_payload(event_type, subscription_object()))

        assert isinstance(event, SubscriptionChangedEvent)
        assert event.action == action
        assert event.subscription.subscription_id == "sub_123"

    def test_invoice_event(self):
        event = decode_event(
            event_payload("invoice.payment_failed", {"id": "in_1", "customer": "cus_1", "status": "open"})
        )

        assert isinstance(event, InvoiceChangedEvent)
        assert event.action == "payment_failed"

    def test_checkout_subscription_mode(self):
        event = decode_event(
            event_payload(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "mode": "subscription",
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "client_reference_id": None,
                    "metadata": {"user_id": "0b7c2b0e-8d8f-4d0a-9c57-5f0fe0f6d1a1"},
                },
            )
        )

        assert isinstance(event, CheckoutCompletedEvent)
        assert event.subscription_id == "sub_1"
        assert event.user_reference == "0b7c2b0e-8d8f-4d0a-9c57-5f0fe0f6d1a1"
        assert event.subscription is None

    def test_checkout_payment_mode_ignored(self):
        event = decode_event(event_payload("checkout.session.completed", {"id": "cs_1", "mode": "payment"}))
        assert isinstance(event, IgnoredEvent)

    def test_unhandled_type_ignored(self):
        event = decode_event(event_payload("charge.refunded", {"id": "ch_1"}))
        assert isinstance(event, IgnoredEvent)
        assert event.event_type == "charge.refunded"

    def test_missing_id_unprocessable(self):
        with pytest.raises(UnprocessableEventError):
            decode_event({"type": "invoice.paid", "data": {"object": {}}})

    def test_malformed_handled_object_unprocessable(self):
        with pytest.raises(UnprocessableEventError):
            decode_event(event_payload("customer.subscription.updated", subscription_object(id="")))

    @pytest.mark.parametrize("value", [10**20, -(10**20)])
    def test_out_of_range_timestamp_unprocessable(self, value):
        with pytest.raises(UnprocessableEventError):
            decode_event(
                event_payload(
                    "customer.subscription.updated",
                    subscription_object(current_period_start=value),
                )
            )

    def test_out_of_range_invoice_created_unprocessable(self):
        with pytest.raises(UnprocessableEventError):
            decode_event(
                event_payload(
                    "invoice.paid", {"id": "in_1", "customer": "cus_1", "created": 10**20}
                )
            )


class TestVerifyWebhook:
    """Tests for StripeProvider.verify_webhook."""

    async def test_valid_signature(self, provider: StripeProvider):
        payload = json.dumps(event_payload("customer.subscription.created", subscription_object()))

        event = await provider.verify_webhook(payload.encode(), sign(payload))

        assert isinstance(event, SubscriptionChangedEvent)
        assert event.event_id == "evt_123"

    async def test_wrong_secret_rejected(self, provider: StripeProvider):
        payload = json.dumps(event_payload("invoice.paid", {"id": "in_1"}))

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.encode(), sign(payload, secret="whsec_other"))

    async def test_modified_payload_rejected(self, provider: StripeProvider):
        """Signature is checked against the exact bytes received."""
        payload = json.dumps(event_payload("invoice.paid", {"id": "in_1"}))
        header = sign(payload)

        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(payload.replace("in_1", "in_2").encode(), header)

    async def test_garbage_header_rejected(self, provider: StripeProvider):
        with pytest.raises(WebhookVerificationError):
            await provider.verify_webhook(b"{}", "not-a-signature")

    async def test_signed_out_of_range_timestamp_unprocessable(self, provider: StripeProvider):
        payload = json.dumps(
            event_payload(
                "customer.subscription.updated",
                subscription_object(current_period_end=10**20),
            )
        )

        with pytest.raises(UnprocessableEventError):
            await provider.verify_webhook(payload.encode(), sign(payload))

    async def test_signed_non_object_unprocessable(self, provider: StripeProvider):
        payload = "[1, 2, 3]"
        with pytest.raises(UnprocessableEventError):
            await provider.verify_webhook(payload.encode(), sign(payload))


class TestApiCalls:
    """Tests for Stripe API calls made by StripeProvider."""

    async def test_create_customer_passes_api_key(self, provider: StripeProvider):
        with patch.object(stripe.Customer, "create", MagicMock(return_value=MagicMock(id="cus_new"))) as create:
            customer_id = await provider.create_customer("a@example.com", "Ada", "user-1")

        assert customer_id == "cus_new"
        create.assert_called_once_with(
            email="a@example.com",
            name="Ada",
            metadata={"user_id": "user-1"},
            api_key="sk_test_unit",
        )

    async def test_checkout_session(self, provider: StripeProvider):
        session = MagicMock(id="cs_1", url="https://checkout.stripe.com/c/cs_1")
        with patch.object(stripe.checkout.Session, "create", MagicMock(return_value=session)) as create:
            result = await provider.create_checkout_session(
                customer_id="cus_1",
                price_id="price_pro_test",
                success_url="https://app.example.com/ok",
                cancel_url="https://app.example.com/cancel",
                user_id="user-1",
                plan_code="pro",
            )

        assert result.session_id == "cs_1"
        assert result.url == "https://checkout.stripe.com/c/cs_1"
        kwargs = create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["client_reference_id"] == "user-1"
        assert kwargs["line_items"] == [{"price": "price_pro_test", "quantity": 1}]

    async def test_stripe_error_wrapped(self, provider: StripeProvider):
        with patch.object(
            stripe.billing_portal.Session, "create", MagicMock(side_effect=stripe.StripeError("down"))
        ):
            with pytest.raises(PaymentProviderError):
                await provider.create_billing_portal_session("cus_1", "https://app.example.com")

    async def test_expand_checkout_attaches_subscription(self, provider: StripeProvider):
        event = CheckoutCompletedEvent(
            event_id="evt_1",
            event_type="checkout.session.completed",
            checkout_session_id="cs_1",
            customer_id="cus_123",
            user_reference="user-1",
            subscription_id="sub_123",
        )
        with patch.object(
            stripe.Subscription, "retrieve", MagicMock(return_value=subscription_object())
        ) as retrieve:
            expanded = await provider.expand_checkout(event)

        retrieve.assert_called_once_with("sub_123", api_key="sk_test_unit")
        assert expanded.subscription is not None
        assert expanded.subscription.price_id == "price_pro_test"

    async def test_expand_checkout_without_subscription_is_noop(self, provider: StripeProvider):
        event = CheckoutCompletedEvent(
            event_id="evt_1",
            event_type="checkout.session.completed",
            checkout_session_id="cs_1",
            customer_id=None,
            user_reference=None,
            subscription_id=None,
        )
        assert await provider.expand_checkout(event) is event
