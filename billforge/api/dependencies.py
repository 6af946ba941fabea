"""
FastAPI Dependencies - Authentication, authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

The global settings object is read here and nowhere below the route layer;
services receive the session, codec and Stripe provider explicitly.
"""

from collections.abc import Awaitable, Callable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.config import settings
from billforge.db.session import get_write_db
from billforge.exceptions import AuthenticationError, AuthorizationError
from billforge.models.api import AppRole
from billforge.models.domain import AuthenticatedUser
from billforge.observability.logging import bind_user
from billforge.services.session_manager import SessionManager
from billforge.services.stripe_provider import StripeProvider
from billforge.services.subscriptions import SubscriptionService
from billforge.services.token_codec import TokenCodec

logger = get_logger(__name__)

# Bearer token scheme for access tokens; missing header handled below
bearer_scheme = HTTPBearer(auto_error=False)


def get_token_codec() -> TokenCodec:
    """Build the token codec from settings."""
    return TokenCodec.from_settings(settings)


def get_stripe_provider() -> StripeProvider | None:
    """Build the Stripe provider, or None when Stripe is not configured."""
    if not settings.stripe_configured:
        return None
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


def get_session_manager(
    db: AsyncSession = Depends(get_write_db),
    codec: TokenCodec = Depends(get_token_codec),
) -> SessionManager:
    """Build a SessionManager bound to the request's write session."""
    return SessionManager(
        db,
        codec,
        reuse_revokes_sessions=settings.refresh_reuse_revokes_sessions,
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    codec: TokenCodec = Depends(get_token_codec),
) -> AuthenticatedUser:
    """
    FastAPI dependency to validate the access token from the Authorization header.

    Accepts: Authorization: Bearer {access_token}

    Raises:
        AuthenticationError: No bearer credential
        InvalidTokenError: Malformed, badly signed or wrong token type
        ExpiredTokenError: Access token past its expiry
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authorization header required")

    claims = codec.verify_access_token(credentials.credentials)
    bind_user(claims.user_id)
    return AuthenticatedUser(user_id=claims.user_id, email=claims.email)


def require_role(
    required_role: AppRole,
) -> Callable[..., Awaitable[AuthenticatedUser]]:
    """
    Create a dependency that requires a minimum plan tier.

    Usage:
        @router.get("/reports/summary")
        async def summary(user: AuthenticatedUser = Depends(require_role(AppRole.PRO))):
            ...

    Raises:
        AuthorizationError: User's role ranks below required_role
    """

    async def check_role(
        user: AuthenticatedUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_write_db),
    ) -> AuthenticatedUser:
        role, _ = await SubscriptionService(db).get_role_and_subscription(user.user_id)
        if not SubscriptionService.has_required_role(role, required_role):
            logger.warning(
                "role_check_failed",
                user_id=str(user.user_id),
                required_role=required_role.value,
                actual_role=role.value,
            )
            raise AuthorizationError(required_role.value, role.value)
        return user

    return check_role
