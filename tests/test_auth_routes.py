"""
Tests for Auth Routes.

Registration runs through the real AuthService and SessionManager over the
mock session; refresh/logout swap in a mocked AuthService to check cookie
handling.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from billforge.api.auth_routes import get_auth_service
from billforge.api.dependencies import get_stripe_provider
from billforge.config import settings
from billforge.db.models import RefreshToken, User
from billforge.exceptions import (
    InvalidCredentialsError,
    InvalidTokenError,
    StorageUnavailableError,
)
from billforge.models.domain import AuthSession, IssuedSession
from billforge.services.auth import AuthService
from billforge.services.stripe_provider import StripeProvider

COOKIE = settings.refresh_cookie_name


def auth_session(user) -> AuthSession:
    return AuthSession(
        user_id=user.id,
        email=user.email,
        name=user.name,
        created_at=user.created_at,
        tokens=IssuedSession(
            user_id=user.id,
            access_token="access.jwt",
            refresh_token="rotated.refresh.jwt",
            refresh_expires_at=datetime.now(UTC) + timedelta(days=7),
        ),
    )


@pytest.fixture
def auth_service(app, mock_user) -> AsyncMock:
    """Replace the AuthService dependency with a mock."""
    service = AsyncMock(spec=AuthService)
    service.login.return_value = auth_session(mock_user)
    service.refresh.return_value = auth_session(mock_user)
    app.dependency_overrides[get_auth_service] = lambda: service
    return service


class TestRegister:
    """Tests for POST /auth/register."""

    def test_register(self, app, client, db_session):
        provider = AsyncMock(spec=StripeProvider)
        provider.create_customer.return_value = "cus_route"
        app.dependency_overrides[get_stripe_provider] = lambda: provider

        response = client.post(
            "/auth/register",
            json={"name": "Ada Lovelace", "email": "Ada@Example.com", "password": "correct horse"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["user"]["email"] == "ada@example.com"
        assert body["token_type"] == "bearer"
        assert body["access_token"]
        assert "refresh_token" not in body
        assert COOKIE in response.cookies

        added = [c.args[0] for c in db_session.add.call_args_list]
        assert any(isinstance(row, User) and row.stripe_customer_id == "cus_route" for row in added)
        assert any(isinstance(row, RefreshToken) for row in added)

    def test_register_duplicate_email(self, client, db_session, mock_user, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=mock_user))

        response = client.post(
            "/auth/register",
            json={"name": "Ada", "email": mock_user.email, "password": "correct horse"},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "EMAIL_ALREADY_IN_USE"

    @pytest.mark.parametrize(
        "payload",
        [
            {"name": "Ada", "email": "ada@example.com", "password": "short"},
            {"name": "Ada", "email": "not-an-email", "password": "correct horse"},
            {"name": "A", "email": "ada@example.com", "password": "correct horse"},
            {"email": "ada@example.com", "password": "correct horse"},
        ],
    )
    def test_register_validation(self, client, payload):
        response = client.post("/auth/register", json=payload)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        # Submitted values are never echoed back
        assert "correct horse" not in response.text


class TestLogin:
    """Tests for POST /auth/login."""

    def test_login_sets_cookie(self, client, auth_service):
        response = client.post(
            "/auth/login", json={"email": "USER@example.com", "password": "correct horse"}
        )

        assert response.status_code == 200
        auth_service.login.assert_awaited_once_with("user@example.com", "correct horse")
        assert response.cookies[COOKIE] == "rotated.refresh.jwt"

    def test_bad_credentials(self, client, auth_service):
        auth_service.login.side_effect = InvalidCredentialsError()

        response = client.post(
            "/auth/login", json={"email": "user@example.com", "password": "wrong"}
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"


class TestRefresh:
    """Tests for POST /auth/refresh."""

    def test_cookie_takes_precedence(self, client, auth_service):
        response = client.post(
            "/auth/refresh",
            json={"refresh_token": "body.token"},
            headers={"Cookie": f"{COOKIE}=cookie.token"},
        )

        assert response.status_code == 200
        auth_service.refresh.assert_awaited_once_with("cookie.token")
        assert response.cookies[COOKIE] == "rotated.refresh.jwt"

    def test_body_fallback(self, client, auth_service):
        response = client.post("/auth/refresh", json={"refresh_token": "body.token"})

        assert response.status_code == 200
        auth_service.refresh.assert_awaited_once_with("body.token")

    def test_no_token(self, client, auth_service):
        auth_service.refresh.side_effect = InvalidTokenError("missing refresh token")

        response = client.post("/auth/refresh")

        assert response.status_code == 401
        auth_service.refresh.assert_awaited_once_with(None)

    def test_reused_token(self, client, auth_service):
        auth_service.refresh.side_effect = InvalidTokenError("refresh token already used")

        response = client.post("/auth/refresh", headers={"Cookie": f"{COOKIE}=used.token"})

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"


class TestLogout:
    """Tests for DELETE /auth/logout."""

    def test_logout_clears_cookie(self, client, auth_service):
        response = client.delete("/auth/logout", headers={"Cookie": f"{COOKIE}=live.token"})

        assert response.status_code == 204
        auth_service.logout.assert_awaited_once_with("live.token")
        assert f"{COOKIE}=" in response.headers["set-cookie"]

    def test_logout_without_token(self, client, auth_service):
        response = client.delete("/auth/logout")

        assert response.status_code == 204
        auth_service.logout.assert_awaited_once_with(None)

    def test_logout_survives_storage_failure(self, client, auth_service):
        """The client is always logged out, even if revocation couldn't be stored."""
        auth_service.logout.side_effect = StorageUnavailableError("connection refused")

        response = client.delete("/auth/logout", headers={"Cookie": f"{COOKIE}=live.token"})

        assert response.status_code == 204
        assert f"{COOKIE}=" in response.headers["set-cookie"]
