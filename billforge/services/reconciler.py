"""
Subscription Reconciler - Applies verified Stripe events to local state.

NO DICTIONARIES - Events arrive as tagged dataclasses, results as outcomes.

Guarantees:
- Each event id is applied at most once (EventDedupLedger marker written in
  the same transaction as the mutation).
- At most one occupying subscription per user: the user row is locked and
  every other occupying subscription is canceled before the target is
  written, all in one transaction.
- Order independence: subscriptions are upserted by Stripe ID and the
  invariant is recomputed from stored state on every event.

Remote lookups (checkout expansion) happen before apply() is called.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.db.models import Invoice, Subscription, SubscriptionPlan, User
from billforge.db.session import unit_of_work
from billforge.exceptions import ConcurrencyError, UnprocessableEventError
from billforge.models.api import OCCUPYING_STATUSES, InvoiceStatus, SubscriptionStatus
from billforge.models.domain import ReconcileOutcome
from billforge.observability.metrics import metrics
from billforge.services.audit_log import AuditLogService
from billforge.services.event_ledger import EventDedupLedger
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


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def map_subscription_status(raw: str | None) -> SubscriptionStatus:
    """
    Map a Stripe subscription status to the local enumeration.

    Unknown values map to CANCELED so they never count as occupying.
    """
    try:
        return SubscriptionStatus((raw or "").lower())
    except ValueError:
        return SubscriptionStatus.CANCELED


def map_invoice_status(raw: str | None) -> InvoiceStatus:
    """Map a Stripe invoice status; missing or unknown values map to DRAFT."""
    try:
        return InvoiceStatus((raw or "").lower())
    except ValueError:
        return InvoiceStatus.DRAFT


class SubscriptionReconciler:
    """
    Applies subscription, checkout and invoice events exactly once.

    Usage:
        reconciler = SubscriptionReconciler(
            session, EventDedupLedger(session), settings.price_plan_map
        )
        outcome = await reconciler.apply(event)
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: EventDedupLedger,
        price_plan_map: Mapping[str, str],
        audit_log: AuditLogService | None = None,
    ) -> None:
        """Initialize with session, dedup ledger and price -> plan mapping."""
        self.session = session
        self.ledger = ledger
        self.price_plan_map = dict(price_plan_map)
        self.audit_log = audit_log or AuditLogService(session)

    async def apply(self, event: ProviderEvent) -> ReconcileOutcome:
        """
        Apply one verified event.

        Returns:
            APPLIED on mutation, DUPLICATE for an already-applied event id,
            SKIPPED for an event that cannot be resolved locally, IGNORED for
            event types that carry no subscription/invoice change

        Raises:
            ConcurrencyError: Conflicting concurrent write on another
                constraint; the delivery should be retried
            StorageUnavailableError: Database unreachable
        """
        if isinstance(event, IgnoredEvent):
            logger.info("webhook_event_ignored", event_id=event.event_id, event_type=event.event_type)
            return ReconcileOutcome.IGNORED

        if await self.ledger.is_processed(event.event_id):
            logger.info(
                "webhook_event_duplicate", event_id=event.event_id, event_type=event.event_type
            )
            return ReconcileOutcome.DUPLICATE

        try:
            if isinstance(event, SubscriptionChangedEvent):
                await self._apply_subscription_event(event)
            elif isinstance(event, CheckoutCompletedEvent):
                await self._apply_checkout_event(event)
            elif isinstance(event, InvoiceChangedEvent):
                await self._apply_invoice_event(event)
        except UnprocessableEventError as exc:
            logger.warning(
                "webhook_event_skipped",
                event_id=event.event_id,
                event_type=event.event_type,
                reason=exc.reason,
            )
            return ReconcileOutcome.SKIPPED
        except IntegrityError as exc:
            # unit_of_work already rolled back; a concurrent delivery may have won
            if await self.ledger.is_processed(event.event_id):
                logger.info(
                    "webhook_event_duplicate_race",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
                return ReconcileOutcome.DUPLICATE
            raise ConcurrencyError(f"event {event.event_id}") from exc

        logger.info("webhook_event_applied", event_id=event.event_id, event_type=event.event_type)
        return ReconcileOutcome.APPLIED

    # ========================================================================
    # Event handlers
    # ========================================================================

    async def _apply_subscription_event(self, event: SubscriptionChangedEvent) -> None:
        snapshot = event.subscription
        async with unit_of_work(self.session):
            user = await self._resolve_user_by_customer(event.event_id, snapshot.customer_id)
            await self._reconcile_subscription(
                event_id=event.event_id,
                event_type=event.event_type,
                user=user,
                snapshot=snapshot,
                audit_action=f"stripe.subscription.{event.action}",
            )

    async def _apply_checkout_event(self, event: CheckoutCompletedEvent) -> None:
        if event.subscription is None:
            raise UnprocessableEventError(event.event_id, "checkout has no subscription")

        user_id = self._parse_user_reference(event.event_id, event.user_reference)
        async with unit_of_work(self.session):
            user = await self._lock_user(user_id)
            if user is None:
                raise UnprocessableEventError(event.event_id, f"unknown user {user_id}")

            customer_id = event.customer_id or event.subscription.customer_id
            if user.stripe_customer_id is None and customer_id:
                user.stripe_customer_id = customer_id
                logger.info(
                    "stripe_customer_linked", user_id=str(user.id), customer_id=customer_id
                )

            await self._reconcile_subscription(
                event_id=event.event_id,
                event_type=event.event_type,
                user=user,
                snapshot=event.subscription,
                audit_action="stripe.checkout.completed",
            )

    async def _apply_invoice_event(self, event: InvoiceChangedEvent) -> None:
        snapshot = event.invoice
        async with unit_of_work(self.session):
            user = await self._resolve_user_by_customer(event.event_id, snapshot.customer_id)

            subscription_ref: UUID | None = None
            if snapshot.subscription_id:
                subscription = await self._find_subscription_by_external_id(
                    snapshot.subscription_id
                )
                subscription_ref = subscription.id if subscription else None

            invoice = await self._find_invoice_by_external_id(snapshot.invoice_id)
            if invoice is None:
                invoice = Invoice(id=uuid4(), user_id=user.id, stripe_invoice_id=snapshot.invoice_id)
                self.session.add(invoice)
            self._apply_invoice_fields(invoice, snapshot, user.id, subscription_ref)

            self.ledger.record(event.event_id, event.event_type)
            self.audit_log.record(
                action=f"stripe.invoice.{event.action}",
                resource_type="invoice",
                resource_id=snapshot.invoice_id,
                user_id=user.id,
                details=self._invoice_details(invoice, event.event_id),
            )

    async def _reconcile_subscription(
        self,
        event_id: str,
        event_type: str,
        user: User,
        snapshot: SubscriptionSnapshot,
        audit_action: str,
    ) -> None:
        """Invariant-enforcing upsert. Must run inside an open unit_of_work."""
        plan = await self._resolve_plan(event_id, snapshot.price_id)
        status = map_subscription_status(snapshot.status)
        now = _utc_now()

        existing = await self._find_subscription_by_external_id(snapshot.subscription_id)

        superseded = 0
        if status in OCCUPYING_STATUSES:
            others = await self._find_occupying_subscriptions(
                user.id, exclude_id=existing.id if existing else None
            )
            for other in others:
                other.status = SubscriptionStatus.CANCELED
                other.canceled_at = now
                superseded += 1
            if others:
                # Cancellations must hit storage before the target becomes occupying
                await self.session.flush()

        if existing is None:
            existing = Subscription(
                id=uuid4(),
                user_id=user.id,
                plan_id=plan.id,
                stripe_subscription_id=snapshot.subscription_id,
                status=status,
            )
            self.session.add(existing)
        self._apply_subscription_fields(existing, snapshot, user.id, plan, status)

        self.ledger.record(event_id, event_type)
        self.audit_log.record(
            action=audit_action,
            resource_type="subscription",
            resource_id=snapshot.subscription_id,
            user_id=user.id,
            details={
                "event_id": event_id,
                "status": status.value,
                "plan_code": plan.code,
                "superseded": superseded,
            },
        )

        metrics.record_superseded("reconcile", superseded)
        logger.info(
            "subscription_reconciled",
            user_id=str(user.id),
            stripe_subscription_id=snapshot.subscription_id,
            status=status.value,
            plan_code=plan.code,
            superseded=superseded,
        )

    # ========================================================================
    # Field mapping
    # ========================================================================

    @staticmethod
    def _apply_subscription_fields(
        subscription: Subscription,
        snapshot: SubscriptionSnapshot,
        user_id: UUID,
        plan: SubscriptionPlan,
        status: SubscriptionStatus,
    ) -> None:
        subscription.user_id = user_id
        subscription.plan_id = plan.id
        subscription.status = status
        subscription.current_period_start = snapshot.current_period_start
        subscription.current_period_end = snapshot.current_period_end
        subscription.cancel_at_period_end = snapshot.cancel_at_period_end
        subscription.canceled_at = snapshot.canceled_at
        subscription.trial_end = snapshot.trial_end

    @staticmethod
    def _apply_invoice_fields(
        invoice: Invoice,
        snapshot: InvoiceSnapshot,
        user_id: UUID,
        subscription_ref: UUID | None,
    ) -> None:
        invoice.user_id = user_id
        invoice.subscription_id = subscription_ref
        invoice.stripe_payment_intent_id = snapshot.payment_intent_id
        invoice.status = map_invoice_status(snapshot.status)
        invoice.amount_due_cents = snapshot.amount_due_cents
        invoice.amount_paid_cents = snapshot.amount_paid_cents
        invoice.currency = snapshot.currency
        invoice.hosted_invoice_url = snapshot.hosted_invoice_url
        invoice.invoice_pdf = snapshot.invoice_pdf
        invoice.invoice_created_at = snapshot.created_at

    @staticmethod
    def _invoice_details(invoice: Invoice, event_id: str) -> dict[str, Any]:
        return {
            "event_id": event_id,
            "status": invoice.status.value,
            "amount_due_cents": invoice.amount_due_cents,
            "amount_paid_cents": invoice.amount_paid_cents,
            "currency": invoice.currency,
        }

    # ========================================================================
    # Resolution
    # ========================================================================

    @staticmethod
    def _parse_user_reference(event_id: str, reference: str | None) -> UUID:
        if not reference:
            raise UnprocessableEventError(event_id, "checkout has no user reference")
        try:
            return UUID(reference)
        except ValueError as exc:
            raise UnprocessableEventError(event_id, f"invalid user reference {reference}") from exc

    async def _resolve_user_by_customer(self, event_id: str, customer_id: str | None) -> User:
        """Resolve and lock the user owning a Stripe customer."""
        if not customer_id:
            raise UnprocessableEventError(event_id, "event has no customer")
        user = await self._find_user_by_customer(customer_id)
        if user is None:
            raise UnprocessableEventError(event_id, f"unknown customer {customer_id}")
        locked = await self._lock_user(user.id)
        if locked is None:
            raise UnprocessableEventError(event_id, f"user for customer {customer_id} vanished")
        return locked

    async def _resolve_plan(self, event_id: str, price_id: str | None) -> SubscriptionPlan:
        if not price_id:
            raise UnprocessableEventError(event_id, "subscription has no price")
        plan_code = self.price_plan_map.get(price_id)
        if plan_code is None:
            raise UnprocessableEventError(event_id, f"unmapped price {price_id}")
        plan = await self._find_plan_by_code(plan_code)
        if plan is None:
            raise UnprocessableEventError(event_id, f"unknown plan {plan_code}")
        return plan

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_user_by_customer(self, customer_id: str) -> User | None:
        """Find user by Stripe customer ID."""
        stmt = select(User).where(User.stripe_customer_id == customer_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_user(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE) - serializes per-user changes."""
        stmt = select(User).where(User.id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_plan_by_code(self, plan_code: str) -> SubscriptionPlan | None:
        """Find an active plan by code."""
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.code == plan_code, SubscriptionPlan.is_active.is_(True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_subscription_by_external_id(
        self, stripe_subscription_id: str
    ) -> Subscription | None:
        """Find subscription by Stripe subscription ID."""
        stmt = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_occupying_subscriptions(
        self, user_id: UUID, exclude_id: UUID | None = None
    ) -> list[Subscription]:
        """Find the user's occupying subscriptions, optionally excluding one."""
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(sorted(OCCUPYING_STATUSES)),
        )
        if exclude_id is not None:
            stmt = stmt.where(Subscription.id != exclude_id)
        result = await self.session.execute(stmt.with_for_update())
        return list(result.scalars().all())

    async def _find_invoice_by_external_id(self, stripe_invoice_id: str) -> Invoice | None:
        """Find invoice by Stripe invoice ID."""
        stmt = select(Invoice).where(Invoice.stripe_invoice_id == stripe_invoice_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
