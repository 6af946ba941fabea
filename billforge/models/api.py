"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration (Stripe vocabulary)."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


# Statuses that count as the user's one current subscription
OCCUPYING_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


class InvoiceStatus(str, Enum):
    """Invoice status enumeration."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    UNCOLLECTIBLE = "uncollectible"
    VOID = "void"


class BillingInterval(str, Enum):
    """Plan billing interval."""

    MONTH = "month"
    YEAR = "year"


class AppRole(str, Enum):
    """Access tier derived from the current subscription's plan code."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


ROLE_RANK: dict[AppRole, int] = {AppRole.FREE: 0, AppRole.PRO: 1, AppRole.PREMIUM: 2}


# ============================================================================
# Auth Models
# ============================================================================


class RegisterRequest(BaseModel):
    """POST /auth/register request body."""

    name: str = Field(..., min_length=2, max_length=255)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Lowercase and sanity-check the address."""
        v = v.strip().lower()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("email must be a valid address")
        return v


class LoginRequest(BaseModel):
    """POST /auth/login request body."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Lowercase for lookup."""
        return v.strip().lower()


class RefreshRequest(BaseModel):
    """Optional body for /auth/refresh and /auth/logout (cookie takes precedence)."""

    refresh_token: str | None = Field(None, max_length=4096)


class UserResponse(BaseModel):
    """Public user profile."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str
    created_at: datetime


class AuthResponse(BaseModel):
    """Register / login / refresh response (refresh token travels in a cookie)."""

    user: UserResponse
    access_token: str
    token_type: Literal["bearer"] = "bearer"


# ============================================================================
# Plan / Subscription Models
# ============================================================================


class PlanResponse(BaseModel):
    """Subscription plan as listed to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: str | None = None
    price_cents: int
    currency: str
    interval: BillingInterval


class PlanListResponse(BaseModel):
    """GET /plans response."""

    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """A user's subscription."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    status: SubscriptionStatus
    plan: PlanResponse
    stripe_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_end: datetime | None = None


class CurrentSubscriptionResponse(BaseModel):
    """GET /subscriptions/current response."""

    role: AppRole
    subscription: SubscriptionResponse | None = None


class ManualSubscriptionRequest(BaseModel):
    """POST /subscriptions/manual request body."""

    plan_code: str = Field(..., min_length=1, max_length=50)


class ManualSubscriptionResponse(BaseModel):
    """POST /subscriptions/manual response."""

    subscription: SubscriptionResponse


class MeResponse(BaseModel):
    """GET /me response."""

    user: UserResponse
    role: AppRole
    subscription: SubscriptionResponse | None = None


# ============================================================================
# Billing Models
# ============================================================================


class CheckoutRequest(BaseModel):
    """POST /billing/checkout request body."""

    plan_code: Literal["pro", "premium"]
    success_url: str = Field(..., min_length=1, max_length=2048)
    cancel_url: str = Field(..., min_length=1, max_length=2048)


class CheckoutResponse(BaseModel):
    """POST /billing/checkout response."""

    checkout_session_id: str
    url: str


class PortalRequest(BaseModel):
    """POST /billing/portal request body."""

    return_url: str = Field(..., min_length=1, max_length=2048)


class PortalResponse(BaseModel):
    """POST /billing/portal response."""

    url: str


class InvoiceResponse(BaseModel):
    """A billing record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stripe_invoice_id: str
    subscription_id: UUID | None = None
    status: InvoiceStatus
    amount_due_cents: int
    amount_paid_cents: int
    currency: str
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    invoice_created_at: datetime | None = None


class InvoiceListResponse(BaseModel):
    """GET /invoices response."""

    invoices: list[InvoiceResponse]


class SummaryReportResponse(BaseModel):
    """GET /reports/summary response."""

    users_count: int
    subscriptions_count: int
    invoices_count: int


# ============================================================================
# Generic Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Webhook acknowledgement returned to Stripe."""

    received: bool


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str = "ok"


class ErrorResponse(BaseModel):
    """Structured error body for every client-visible failure."""

    status_code: int
    code: str
    message: str
    details: list[dict[str, object]] | None = None
