"""
Tests for exception classes.

Covers status codes, machine-readable codes and messages.
"""

from uuid import uuid4

import pytest

from billforge.exceptions import (
    AuthenticationError,
    AuthorizationError,
    BillingError,
    ConcurrencyError,
    EmailAlreadyInUseError,
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidPlanError,
    InvalidTokenError,
    PaymentProviderError,
    PaymentProviderNotConfiguredError,
    PlanNotFoundError,
    ResourceNotFoundError,
    StorageUnavailableError,
    SubscriptionExistsError,
    UnprocessableEventError,
    UserNotFoundError,
    WebhookVerificationError,
)


class TestBillingError:
    """Tests for base BillingError."""

    def test_defaults(self):
        exc = BillingError()
        assert exc.status_code == 500
        assert exc.code == "INTERNAL_SERVER_ERROR"
        assert exc.message == str(exc)


class TestStatusAndCodes:
    """Every error maps to a stable HTTP status and code."""

    @pytest.mark.parametrize(
        "exc,status_code,code",
        [
            (AuthenticationError(), 401, "UNAUTHENTICATED"),
            (InvalidCredentialsError(), 401, "INVALID_CREDENTIALS"),
            (InvalidTokenError("bad"), 401, "INVALID_TOKEN"),
            (ExpiredTokenError("refresh"), 401, "EXPIRED_TOKEN"),
            (AuthorizationError("pro", "free"), 403, "FORBIDDEN"),
            (ResourceNotFoundError("Invoice", "in_1"), 404, "NOT_FOUND"),
            (UserNotFoundError(uuid4()), 404, "USER_NOT_FOUND"),
            (PlanNotFoundError("gold"), 404, "PLAN_NOT_FOUND"),
            (EmailAlreadyInUseError("a@example.com"), 409, "EMAIL_ALREADY_IN_USE"),
            (SubscriptionExistsError(uuid4(), uuid4()), 409, "SUBSCRIPTION_EXISTS"),
            (ConcurrencyError("event evt_1"), 409, "CONCURRENT_MODIFICATION"),
            (InvalidPlanError("free", "no"), 400, "INVALID_PLAN"),
            (WebhookVerificationError("bad sig"), 400, "INVALID_SIGNATURE"),
            (StorageUnavailableError("down"), 503, "STORAGE_UNAVAILABLE"),
            (PaymentProviderNotConfiguredError(), 503, "PAYMENT_PROVIDER_NOT_CONFIGURED"),
            (PaymentProviderError("boom"), 502, "PAYMENT_PROVIDER_ERROR"),
            (UnprocessableEventError("evt_1", "unknown customer"), 422, "UNPROCESSABLE_EVENT"),
        ],
    )
    def test_status_and_code(self, exc, status_code, code):
        assert isinstance(exc, BillingError)
        assert exc.status_code == status_code
        assert exc.code == code


class TestMessages:
    """Tests for message formatting and attributes."""

    def test_expired_token_message(self):
        exc = ExpiredTokenError("refresh")
        assert exc.token_type == "refresh"
        assert str(exc) == "Refresh token has expired"

    def test_invalid_credentials_does_not_reveal_which_part(self):
        assert str(InvalidCredentialsError()) == "Invalid email or password"

    def test_user_not_found(self):
        user_id = uuid4()
        exc = UserNotFoundError(user_id)
        assert exc.user_id == user_id
        assert exc.resource == "User"
        assert str(user_id) in str(exc)

    def test_unprocessable_event(self):
        exc = UnprocessableEventError("evt_1", "unmapped price price_x")
        assert exc.event_id == "evt_1"
        assert exc.reason == "unmapped price price_x"
        assert "evt_1" in str(exc)

    def test_authorization_roles(self):
        exc = AuthorizationError("premium", "pro")
        assert exc.required_role == "premium"
        assert exc.actual_role == "pro"
