"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.

Webhook payloads are verified over the exact raw bytes, then decoded into
the tagged event variants from billforge.services.payment_provider. Stripe
objects may arrive as plain dicts (webhook JSON) or StripeObjects (API
responses); both are read through _get().

The Stripe SDK is synchronous, so API calls run in a worker thread and never
inside an open database transaction.
"""

import asyncio
import json
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from billforge.exceptions import (
    PaymentProviderError,
    UnprocessableEventError,
    WebhookVerificationError,
)
from billforge.models.domain import CheckoutSession
from billforge.services.payment_provider import (
    CheckoutCompletedEvent,
    IgnoredEvent,
    InvoiceChangedEvent,
    InvoiceSnapshot,
    ProviderEvent,
    SubscriptionChangedEvent,
    SubscriptionSnapshot,
)

logger = get_logger(__name__)

SUBSCRIPTION_EVENT_TYPES = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
INVOICE_EVENT_TYPES = frozenset(
    {
        "invoice.paid",
        "invoice.payment_failed",
        "invoice.marked_uncollectible",
        "invoice.voided",
    }
)
CHECKOUT_COMPLETED = "checkout.session.completed"


# ============================================================================
# Payload decoding
# ============================================================================


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a dict or a StripeObject."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _ref_id(value: Any) -> str | None:
    """Normalize a reference that may be an ID string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    ref = _get(value, "id")
    return str(ref) if ref else None


def _timestamp(value: Any) -> datetime | None:
    """
    Convert Unix seconds to an aware UTC datetime.

    Raises:
        ValueError: Not an integer, or outside the platform's time range
    """
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), UTC)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"timestamp out of range: {value}") from exc


def snapshot_subscription(obj: Any) -> SubscriptionSnapshot:
    """Decode a Stripe subscription object."""
    items = _get(_get(obj, "items"), "data") or []
    first_item = items[0] if items else None

    # Newer API versions moved the billing period onto subscription items
    period_start = _get(obj, "current_period_start") or _get(first_item, "current_period_start")
    period_end = _get(obj, "current_period_end") or _get(first_item, "current_period_end")

    return SubscriptionSnapshot(
        subscription_id=str(_get(obj, "id") or ""),
        customer_id=_ref_id(_get(obj, "customer")),
        price_id=_ref_id(_get(first_item, "price")),
        status=str(_get(obj, "status") or ""),
        current_period_start=_timestamp(period_start),
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
        canceled_at=_timestamp(_get(obj, "canceled_at")),
        trial_end=_timestamp(_get(obj, "trial_end")),
    )


def snapshot_invoice(obj: Any) -> InvoiceSnapshot:
    """Decode a Stripe invoice object."""
    subscription_ref = _get(obj, "subscription")
    if subscription_ref is None:
        subscription_ref = _get(_get(_get(obj, "parent"), "subscription_details"), "subscription")

    currency = _get(obj, "currency")
    return InvoiceSnapshot(
        invoice_id=str(_get(obj, "id") or ""),
        customer_id=_ref_id(_get(obj, "customer")),
        subscription_id=_ref_id(subscription_ref),
        payment_intent_id=_ref_id(_get(obj, "payment_intent")),
        status=_get(obj, "status"),
        amount_due_cents=int(_get(obj, "amount_due") or 0),
        amount_paid_cents=int(_get(obj, "amount_paid") or 0),
        currency=str(currency).upper() if currency else "USD",
        hosted_invoice_url=_get(obj, "hosted_invoice_url"),
        invoice_pdf=_get(obj, "invoice_pdf"),
        created_at=_timestamp(_get(obj, "created")),
    )


def decode_event(data: Mapping[str, Any]) -> ProviderEvent:
    """
    Decode a verified Stripe event into a tagged variant.

    Raises:
        UnprocessableEventError: Event lacks id/type, or a handled event type
            carries an object that cannot be decoded
    """
    event_id = data.get("id")
    event_type = data.get("type")
    if not event_id or not event_type:
        raise UnprocessableEventError(str(event_id or "unknown"), "event missing id or type")

    obj = _get(data.get("data"), "object")

    try:
        if event_type in SUBSCRIPTION_EVENT_TYPES:
            return SubscriptionChangedEvent(
                event_id=event_id,
                event_type=event_type,
                action=event_type.rsplit(".", 1)[1],
                subscription=snapshot_subscription(obj),
            )

        if event_type in INVOICE_EVENT_TYPES:
            return InvoiceChangedEvent(
                event_id=event_id,
                event_type=event_type,
                action=event_type.split(".", 1)[1],
                invoice=snapshot_invoice(obj),
            )

        if event_type == CHECKOUT_COMPLETED and _get(obj, "mode") == "subscription":
            metadata = _get(obj, "metadata") or {}
            return CheckoutCompletedEvent(
                event_id=event_id,
                event_type=event_type,
                checkout_session_id=str(_get(obj, "id") or ""),
                customer_id=_ref_id(_get(obj, "customer")),
                user_reference=_get(obj, "client_reference_id") or _get(metadata, "user_id"),
                subscription_id=_ref_id(_get(obj, "subscription")),
            )
    except (TypeError, ValueError) as exc:
        raise UnprocessableEventError(event_id, f"malformed {event_type} payload: {exc}") from exc

    return IgnoredEvent(event_id=event_id, event_type=event_type)


# ============================================================================
# Provider
# ============================================================================


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe. The API key is passed
    per call rather than set on the stripe module, so instances stay
    independent of each other.
    """

    def __init__(self, api_key: str, webhook_secret: str) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def verify_webhook(self, payload: bytes, signature: str) -> ProviderEvent:
        """
        Verify and decode a Stripe webhook event.

        Args:
            payload: Raw webhook payload, exactly as received
            signature: Stripe-Signature header value

        Raises:
            WebhookVerificationError: If signature verification fails
            UnprocessableEventError: Handled event type with unusable payload
        """
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Webhook payload is not UTF-8") from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise UnprocessableEventError("unknown", "payload is not valid JSON") from exc
        if not isinstance(data, dict):
            raise UnprocessableEventError("unknown", "payload is not a JSON object")

        event = decode_event(data)
        logger.info(
            "stripe_webhook_verified",
            event_id=event.event_id,
            event_type=event.event_type,
            variant=type(event).__name__,
        )
        return event

    async def expand_checkout(self, event: CheckoutCompletedEvent) -> CheckoutCompletedEvent:
        """
        Attach the Stripe subscription referenced by a completed checkout.

        Raises:
            PaymentProviderError: If the subscription cannot be retrieved
        """
        if event.subscription_id is None:
            return event

        subscription = await self._call(
            "retrieve_subscription",
            stripe.Subscription.retrieve,
            event.subscription_id,
        )
        try:
            snapshot = snapshot_subscription(subscription)
        except (TypeError, ValueError) as exc:
            raise PaymentProviderError(f"Unreadable subscription {event.subscription_id}") from exc
        return replace(event, subscription=snapshot)

    async def create_customer(self, email: str, name: str, user_id: str) -> str:
        """
        Create a Stripe customer for a user.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": user_id},
        )
        logger.info("stripe_customer_created", customer_id=customer.id, user_id=user_id)
        return str(customer.id)

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
        plan_code: str,
    ) -> CheckoutSession:
        """
        Create a subscription-mode Checkout session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        metadata = {"user_id": user_id, "plan_code": plan_code}
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        logger.info(
            "stripe_checkout_session_created",
            checkout_session_id=session.id,
            user_id=user_id,
            plan_code=plan_code,
        )
        return CheckoutSession(session_id=str(session.id), url=str(session.url))

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Billing Portal session.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        session = await self._call(
            "create_billing_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return str(session.url)

    async def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Stripe SDK call off the event loop."""
        try:
            return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_api_call_failed",
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe {operation} failed: {exc}") from exc
