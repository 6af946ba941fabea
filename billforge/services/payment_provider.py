"""
Payment Provider Protocol - Provider-agnostic interface and event variants.

NO DICTIONARIES - All data uses strongly typed models.

Provider payloads are decoded at the boundary into one of the tagged event
variants below. Customer references are normalized to a plain string ID
before they reach the reconciler.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from billforge.models.domain import CheckoutSession


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side state of one subscription."""

    subscription_id: str
    customer_id: str | None
    price_id: str | None
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    trial_end: datetime | None

    def __post_init__(self) -> None:
        """Validate subscription identity."""
        if not self.subscription_id:
            raise ValueError("subscription_id cannot be empty")


@dataclass(frozen=True)
class InvoiceSnapshot:
    """Provider-side state of one invoice."""

    invoice_id: str
    customer_id: str | None
    subscription_id: str | None
    payment_intent_id: str | None
    status: str | None
    amount_due_cents: int
    amount_paid_cents: int
    currency: str
    hosted_invoice_url: str | None
    invoice_pdf: str | None
    created_at: datetime | None

    def __post_init__(self) -> None:
        """Validate invoice identity and amounts."""
        if not self.invoice_id:
            raise ValueError("invoice_id cannot be empty")
        if self.amount_due_cents < 0 or self.amount_paid_cents < 0:
            raise ValueError("Invoice amounts cannot be negative")


@dataclass(frozen=True)
class SubscriptionChangedEvent:
    """customer.subscription.created / updated / deleted."""

    event_id: str
    event_type: str
    action: str  # created | updated | deleted
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class InvoiceChangedEvent:
    """invoice.paid / payment_failed / marked_uncollectible / voided."""

    event_id: str
    event_type: str
    action: str
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class CheckoutCompletedEvent:
    """
    checkout.session.completed.

    `subscription` is filled by the provider client (remote retrieval)
    before the event is handed to the reconciler.
    """

    event_id: str
    event_type: str
    checkout_session_id: str
    customer_id: str | None
    user_reference: str | None  # client_reference_id or metadata.user_id
    subscription_id: str | None
    subscription: SubscriptionSnapshot | None = None


@dataclass(frozen=True)
class IgnoredEvent:
    """Any verified event type the reconciler does not act on."""

    event_id: str
    event_type: str


ProviderEvent = SubscriptionChangedEvent | InvoiceChangedEvent | CheckoutCompletedEvent | IgnoredEvent


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Any payment provider must implement this interface so the reconciler and
    billing services stay provider-agnostic.
    """

    async def verify_webhook(self, payload: bytes, signature: str) -> ProviderEvent:
        """
        Verify signature over the raw payload and decode the event.

        Raises:
            WebhookVerificationError: If signature verification fails
            UnprocessableEventError: Known event type with unusable shape
        """
        ...

    async def expand_checkout(self, event: CheckoutCompletedEvent) -> CheckoutCompletedEvent:
        """
        Attach the provider-side subscription to a completed checkout.

        Raises:
            PaymentProviderError: If the remote lookup fails
        """
        ...

    async def create_customer(self, email: str, name: str, user_id: str) -> str:
        """
        Create a provider customer and return its ID.

        Raises:
            PaymentProviderError: If customer creation fails
        """
        ...

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
        Create a hosted subscription checkout.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a self-service billing portal session and return its URL.

        Raises:
            PaymentProviderError: If session creation fails
        """
        ...
