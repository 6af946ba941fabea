"""
Auth Service - Registration, login and session refresh.

NO DICTIONARIES - All operations use strongly typed domain models.

Passwords are hashed with Argon2id (argon2-cffi). Session credentials are
delegated to SessionManager.
"""

from uuid import uuid4

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.db.models import User, utc_now
from billforge.db.session import release_connection, unit_of_work
from billforge.exceptions import (
    EmailAlreadyInUseError,
    InvalidCredentialsError,
    UserNotFoundError,
)
from billforge.models.domain import AuthSession, IssuedSession
from billforge.observability.metrics import metrics
from billforge.services.payment_provider import PaymentProvider
from billforge.services.session_manager import SessionManager

logger = get_logger(__name__)

# Module-level hasher; PasswordHasher is stateless and thread-safe
password_hasher = PasswordHasher()


class AuthService:
    """Email/password authentication backed by rotating refresh sessions."""

    def __init__(
        self,
        session: AsyncSession,
        session_manager: SessionManager,
        provider: PaymentProvider | None = None,
        hasher: PasswordHasher = password_hasher,
    ) -> None:
        """Initialize with session, session manager and optional Stripe provider."""
        self.session = session
        self.session_manager = session_manager
        self.provider = provider
        self.hasher = hasher

    async def register(self, name: str, email: str, password: str) -> AuthSession:
        """
        Create a user and issue their first session.

        Raises:
            EmailAlreadyInUseError: Email already registered
            PaymentProviderError: Stripe customer creation failed
        """
        if await self._find_user_by_email(email) is not None:
            raise EmailAlreadyInUseError(email)
        await release_connection(self.session)

        user_id = uuid4()
        stripe_customer_id: str | None = None
        if self.provider is not None:
            stripe_customer_id = await self.provider.create_customer(email, name, str(user_id))

        now = utc_now()
        user = User(
            id=user_id,
            email=email,
            name=name,
            password_hash=self.hasher.hash(password),
            stripe_customer_id=stripe_customer_id,
            created_at=now,
            updated_at=now,
        )
        # User and first refresh credential commit together
        try:
            async with unit_of_work(self.session):
                self.session.add(user)
                await self.session.flush()
                tokens = self.session_manager.stage(user)
        except IntegrityError as exc:
            # Race condition - same email registered by another request
            logger.warning(
                "registration_conflict",
                email=email,
                orphaned_stripe_customer_id=stripe_customer_id,
            )
            raise EmailAlreadyInUseError(email) from exc

        metrics.record_session_issued("register")
        logger.info("user_registered", user_id=str(user.id), has_stripe_customer=bool(stripe_customer_id))
        return self._auth_session(user, tokens)

    async def login(self, email: str, password: str) -> AuthSession:
        """
        Verify credentials and issue a session superseding all prior ones.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
        """
        user = await self._find_user_by_email(email)
        if user is None:
            logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()

        try:
            self.hasher.verify(user.password_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError) as exc:
            logger.info("login_failed", reason="bad_password", user_id=str(user.id))
            raise InvalidCredentialsError() from exc

        tokens = await self.session_manager.issue(user, supersede=True)
        logger.info("user_logged_in", user_id=str(user.id))
        return self._auth_session(user, tokens)

    async def refresh(self, raw_refresh_token: str | None) -> AuthSession:
        """
        Rotate a refresh token.

        Raises:
            InvalidTokenError / ExpiredTokenError: See SessionManager.rotate
            UserNotFoundError: Owning user no longer exists
        """
        tokens = await self.session_manager.rotate(raw_refresh_token)
        user = await self.session.get(User, tokens.user_id)
        if user is None:
            raise UserNotFoundError(tokens.user_id)
        return self._auth_session(user, tokens)

    async def logout(self, raw_refresh_token: str | None) -> None:
        """Revoke the presented refresh token. Never fails for absent/revoked tokens."""
        await self.session_manager.revoke(raw_refresh_token)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_user_by_email(self, email: str) -> User | None:
        """Find user by (normalized) email."""
        stmt = select(User).where(User.email == email)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _auth_session(user: User, tokens: IssuedSession) -> AuthSession:
        return AuthSession(
            user_id=user.id,
            email=user.email,
            name=user.name,
            created_at=user.created_at,
            tokens=tokens,
        )
