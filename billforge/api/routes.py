"""
API Routes - FastAPI endpoints for plans, subscriptions, billing and reports.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from billforge.api.dependencies import get_current_user, get_stripe_provider, require_role
from billforge.config import settings
from billforge.db.models import User
from billforge.db.session import get_read_db, get_write_db
from billforge.exceptions import UserNotFoundError
from billforge.models.api import (
    AppRole,
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    HealthResponse,
    InvoiceListResponse,
    InvoiceResponse,
    ManualSubscriptionRequest,
    ManualSubscriptionResponse,
    MeResponse,
    PlanListResponse,
    PlanResponse,
    PortalRequest,
    PortalResponse,
    SubscriptionResponse,
    SummaryReportResponse,
    UserResponse,
)
from billforge.models.domain import AuthenticatedUser
from billforge.services.billing import BillingService
from billforge.services.invoices import InvoiceService
from billforge.services.plans import PlanService
from billforge.services.reports import ReportService
from billforge.services.stripe_provider import StripeProvider
from billforge.services.subscriptions import SubscriptionService

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe for the load balancer."""
    return HealthResponse(status="ok")


@router.get("/plans", response_model=PlanListResponse, tags=["plans"])
async def list_plans(db: AsyncSession = Depends(get_read_db)) -> PlanListResponse:
    """List active plans, cheapest first."""
    plans = await PlanService(db).list_active_plans()
    return PlanListResponse(plans=[PlanResponse.model_validate(plan) for plan in plans])


@router.get("/me", response_model=MeResponse, tags=["users"])
async def get_me(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> MeResponse:
    """Get the authenticated user with their role and current subscription."""
    record = await db.get(User, user.user_id)
    if record is None:
        raise UserNotFoundError(user.user_id)

    role, subscription = await SubscriptionService(db).get_role_and_subscription(user.user_id)
    return MeResponse(
        user=UserResponse.model_validate(record),
        role=role,
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
    )


# =============================================================================
# Subscriptions
# =============================================================================


@router.get(
    "/subscriptions/current",
    response_model=CurrentSubscriptionResponse,
    tags=["subscriptions"],
)
async def get_current_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> CurrentSubscriptionResponse:
    """Get the user's role and occupying subscription (null on the free tier)."""
    role, subscription = await SubscriptionService(db).get_role_and_subscription(user.user_id)
    return CurrentSubscriptionResponse(
        role=role,
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
    )


@router.post(
    "/subscriptions/manual",
    response_model=ManualSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["subscriptions"],
)
async def create_manual_subscription(
    request: ManualSubscriptionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> ManualSubscriptionResponse:
    """
    Assign a paid plan without going through Stripe.

    Any current subscription is canceled. The free plan is rejected with 400.
    """
    subscription = await SubscriptionService(db).create_manual_subscription(
        user.user_id, request.plan_code
    )
    return ManualSubscriptionResponse(subscription=SubscriptionResponse.model_validate(subscription))


# =============================================================================
# Billing (Stripe hosted pages)
# =============================================================================


@router.post(
    "/billing/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["billing"],
)
async def create_checkout(
    request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider | None = Depends(get_stripe_provider),
) -> CheckoutResponse:
    """
    Start a Stripe Checkout session for a paid plan.

    The subscription itself is recorded when Stripe's webhook arrives.
    """
    service = BillingService(db, provider, settings.price_plan_map)
    checkout = await service.create_checkout_session(
        user.user_id, request.plan_code, request.success_url, request.cancel_url
    )
    return CheckoutResponse(checkout_session_id=checkout.session_id, url=checkout.url)


@router.post(
    "/billing/portal",
    response_model=PortalResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["billing"],
)
async def create_portal(
    request: PortalRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider | None = Depends(get_stripe_provider),
) -> PortalResponse:
    """Open the Stripe Billing Portal for the user's customer."""
    service = BillingService(db, provider, settings.price_plan_map)
    url = await service.create_billing_portal_session(user.user_id, request.return_url)
    return PortalResponse(url=url)


@router.get("/invoices", response_model=InvoiceListResponse, tags=["billing"])
async def list_invoices(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> InvoiceListResponse:
    """List the user's most recent invoices."""
    invoices = await InvoiceService(db).list_invoices(user.user_id)
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(invoice) for invoice in invoices]
    )


# =============================================================================
# Reports
# =============================================================================


@router.get("/reports/summary", response_model=SummaryReportResponse, tags=["reports"])
async def get_summary_report(
    user: AuthenticatedUser = Depends(require_role(AppRole.PRO)),
    db: AsyncSession = Depends(get_read_db),
) -> SummaryReportResponse:
    """Row counts across users, subscriptions and invoices. Requires pro or above."""
    counts = await ReportService(db).summary()
    return SummaryReportResponse(
        users_count=counts.users_count,
        subscriptions_count=counts.subscriptions_count,
        invoices_count=counts.invoices_count,
    )
