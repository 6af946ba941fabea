"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every BillingError carries the HTTP status and machine-readable code it is
rendered with at the request boundary (see billforge.main).
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str = "Internal server error") -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Authentication (401)
# ============================================================================


class AuthenticationError(BillingError):
    """Raised when a request carries no usable credential."""

    status_code = 401
    code = "UNAUTHENTICATED"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class InvalidCredentialsError(AuthenticationError):
    """Raised when email/password do not match a user."""

    code = "INVALID_CREDENTIALS"

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class InvalidTokenError(AuthenticationError):
    """Raised when a token is malformed, badly signed, unknown, or already used."""

    code = "INVALID_TOKEN"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid token: {reason}")


class ExpiredTokenError(AuthenticationError):
    """Raised when a well-formed, unrevoked token is past its expiry."""

    code = "EXPIRED_TOKEN"

    def __init__(self, token_type: str) -> None:
        self.token_type = token_type
        super().__init__(f"{token_type.capitalize()} token has expired")


# ============================================================================
# Authorization (403)
# ============================================================================


class AuthorizationError(BillingError):
    """Raised when user's plan tier is below the required role."""

    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, required_role: str, actual_role: str) -> None:
        self.required_role = required_role
        self.actual_role = actual_role
        super().__init__(f"Requires role {required_role}, user has {actual_role}")


# ============================================================================
# Not Found (404)
# ============================================================================


class ResourceNotFoundError(BillingError):
    """Raised when a requested record doesn't exist."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class UserNotFoundError(ResourceNotFoundError):
    """Raised when user doesn't exist."""

    code = "USER_NOT_FOUND"

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("User", str(user_id))


class PlanNotFoundError(ResourceNotFoundError):
    """Raised when a plan code is unknown or the plan is inactive."""

    code = "PLAN_NOT_FOUND"

    def __init__(self, plan_code: str) -> None:
        self.plan_code = plan_code
        super().__init__("Plan", plan_code)


# ============================================================================
# Conflict (409) / Bad Request (400)
# ============================================================================


class ConflictError(BillingError):
    """Raised when the request conflicts with stored state."""

    status_code = 409
    code = "CONFLICT"


class EmailAlreadyInUseError(ConflictError):
    """Raised when registering an email that already has a user."""

    code = "EMAIL_ALREADY_IN_USE"

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"Email already in use: {email}")


class SubscriptionExistsError(ConflictError):
    """Raised when user already holds an occupying subscription."""

    code = "SUBSCRIPTION_EXISTS"

    def __init__(self, user_id: UUID, subscription_id: UUID) -> None:
        self.user_id = user_id
        self.subscription_id = subscription_id
        super().__init__(f"User {user_id} already has subscription {subscription_id}")


class ConcurrencyError(ConflictError):
    """Raised when concurrent modification detected."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class InvalidPlanError(BillingError):
    """Raised when a plan cannot be assigned through the requested path."""

    status_code = 400
    code = "INVALID_PLAN"

    def __init__(self, plan_code: str, reason: str) -> None:
        self.plan_code = plan_code
        self.reason = reason
        super().__init__(f"Plan {plan_code} not allowed: {reason}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    status_code = 400
    code = "INVALID_SIGNATURE"

    def __init__(self, message: str) -> None:
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Upstream failures (5xx)
# ============================================================================


class UpstreamUnavailableError(BillingError):
    """Raised when a dependency (storage, payment provider) is unreachable."""

    status_code = 503
    code = "UPSTREAM_UNAVAILABLE"


class StorageUnavailableError(UpstreamUnavailableError):
    """Raised when the database cannot be reached or drops the connection."""

    code = "STORAGE_UNAVAILABLE"

    def __init__(self, message: str) -> None:
        super().__init__(f"Storage unavailable: {message}")


class PaymentProviderNotConfiguredError(UpstreamUnavailableError):
    """Raised when a Stripe operation is requested without Stripe configured."""

    code = "PAYMENT_PROVIDER_NOT_CONFIGURED"

    def __init__(self, detail: str = "Stripe is not configured") -> None:
        super().__init__(detail)


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    status_code = 502
    code = "PAYMENT_PROVIDER_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(f"Payment provider error: {message}")


# ============================================================================
# Provider events
# ============================================================================


class UnprocessableEventError(BillingError):
    """
    Raised when a verified provider event cannot be applied.

    Covers unresolved customers, unmapped prices and unusable payload shapes.
    Never rendered to a client: the reconciler logs it and skips the event.
    """

    status_code = 422
    code = "UNPROCESSABLE_EVENT"

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Event {event_id} skipped: {reason}")
