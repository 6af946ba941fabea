"""
Webhook Routes - Stripe event intake.

The signature is verified over the exact raw body. Every event that is
evaluated (applied, duplicate, ignored or skipped) is acknowledged with 200;
only internal failures answer 500 so that Stripe retries the delivery.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.api.dependencies import get_stripe_provider
from billforge.config import settings
from billforge.db.session import get_write_db
from billforge.exceptions import UnprocessableEventError, WebhookVerificationError
from billforge.models.api import WebhookAckResponse
from billforge.models.domain import ReconcileOutcome
from billforge.observability import log_context, metrics, trace_operation
from billforge.services.event_ledger import EventDedupLedger
from billforge.services.payment_provider import CheckoutCompletedEvent
from billforge.services.reconciler import SubscriptionReconciler
from billforge.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "stripe-signature"


def _ack(received: bool = True, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=WebhookAckResponse(received=received).model_dump(),
    )


@router.post("/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider | None = Depends(get_stripe_provider),
) -> Response:
    """
    Handle Stripe subscription, checkout and invoice events.

    Responses:
        204: Stripe or its webhook secret is not configured
        400: Missing or invalid signature
        200: Event evaluated (including duplicates and skipped events)
        500: Internal failure; Stripe will retry
    """
    if provider is None or not settings.stripe_webhook_configured:
        logger.warning("stripe_webhook_unconfigured")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("stripe_webhook_missing_signature")
        raise WebhookVerificationError("Missing Stripe-Signature header")

    payload = await request.body()
    try:
        event = await provider.verify_webhook(payload, signature)
    except UnprocessableEventError as exc:
        # Signed but unusable: retrying would never succeed
        logger.warning("stripe_webhook_unprocessable", event_id=exc.event_id, reason=exc.reason)
        metrics.record_webhook_event("unknown", ReconcileOutcome.SKIPPED.value)
        return _ack()

    try:
        with log_context(event_id=event.event_id, event_type=event.event_type):
            if isinstance(event, CheckoutCompletedEvent):
                event = await provider.expand_checkout(event)

            reconciler = SubscriptionReconciler(
                db, EventDedupLedger(db), settings.price_plan_map
            )
            with trace_operation(
                "reconcile_stripe_event",
                event_id=event.event_id,
                event_type=event.event_type,
            ) as span:
                outcome = await reconciler.apply(event)
                span.set_attribute("outcome", outcome.value)
    except Exception as exc:
        logger.error(
            "stripe_webhook_processing_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error=str(exc),
            error_type=type(exc).__name__,
            exc_info=True,
        )
        metrics.record_error(type(exc).__name__, "stripe_webhook")
        return _ack(received=False, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    metrics.record_webhook_event(event.event_type, outcome.value)
    return _ack()
