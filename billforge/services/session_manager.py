"""
Session Manager - Refresh credential lifecycle.

NO DICTIONARIES - All operations use strongly typed domain models.

State machine per refresh credential:

    ISSUED --(used once)--> ROTATED/REVOKED (terminal)

Rotation revokes the consumed credential and inserts its successor in one
transaction. A second presentation of the same raw value finds it revoked
and is treated as a possible theft signal.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from billforge.db.models import RefreshToken, User
from billforge.db.session import unit_of_work
from billforge.exceptions import ExpiredTokenError, InvalidTokenError, UserNotFoundError
from billforge.models.domain import IssuedSession
from billforge.observability.metrics import metrics
from billforge.services.token_codec import TokenCodec

logger = get_logger(__name__)

DEFAULT_REVOKED_RETENTION = timedelta(days=7)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class SessionManager:
    """
    Issues, rotates and revokes refresh credentials.

    Every multi-record change runs inside unit_of_work, so an old token is
    never revoked without its successor existing (and vice versa).
    """

    def __init__(
        self,
        session: AsyncSession,
        codec: TokenCodec,
        reuse_revokes_sessions: bool = True,
    ) -> None:
        """Initialize with database session and token codec."""
        self.session = session
        self.codec = codec
        self.reuse_revokes_sessions = reuse_revokes_sessions

    async def issue(self, user: User, supersede: bool = False) -> IssuedSession:
        """
        Issue a new access/refresh pair for a user.

        Args:
            user: Owning user
            supersede: Revoke every live session of the user in the same
                transaction (a fresh login supersedes prior sessions)

        Raises:
            StorageUnavailableError: Database unreachable
        """
        now = _utc_now()
        async with unit_of_work(self.session):
            revoked = 0
            if supersede:
                revoked = await self._revoke_live_tokens(user.id, now)
            issued = self._add_refresh_token(user, now)

        metrics.record_session_issued("login" if supersede else "issue")
        logger.info(
            "refresh_session_issued",
            user_id=str(user.id),
            superseded_sessions=revoked,
            expires_at=issued.refresh_expires_at.isoformat(),
        )
        return issued

    def stage(self, user: User) -> IssuedSession:
        """
        Sign a new pair and stage its refresh record in the caller's open
        unit_of_work, so it commits (or rolls back) together with the
        caller's own changes. Used for a user's first session at registration.
        """
        return self._add_refresh_token(user, _utc_now())

    async def rotate(self, raw_refresh_token: str | None) -> IssuedSession:
        """
        Exchange a refresh token for a new pair, consuming the old one.

        Raises:
            InvalidTokenError: Missing, malformed, badly signed, unknown or
                already-revoked token (reuse)
            ExpiredTokenError: Known, unrevoked token past its expiry
            UserNotFoundError: Owning user no longer exists
            StorageUnavailableError: Database unreachable
        """
        if not raw_refresh_token:
            metrics.record_rotation("invalid")
            raise InvalidTokenError("missing refresh token")

        try:
            claims = self.codec.verify_refresh_token(raw_refresh_token)
        except InvalidTokenError:
            metrics.record_rotation("invalid")
            raise

        token_hash = self.codec.hash_token(raw_refresh_token)
        now = _utc_now()
        reused_by: UUID | None = None

        try:
            async with unit_of_work(self.session):
                record = await self._lock_refresh_token(token_hash)

                if record is None or record.user_id != claims.user_id:
                    metrics.record_rotation("invalid")
                    raise InvalidTokenError("refresh token not recognized")

                if record.is_revoked:
                    reused_by = record.user_id
                else:
                    if record.expires_at < now:
                        metrics.record_rotation("expired")
                        raise ExpiredTokenError("refresh")

                    user = await self.session.get(User, record.user_id)
                    if user is None:
                        raise UserNotFoundError(record.user_id)

                    record.is_revoked = True
                    record.revoked_at = now
                    issued = self._add_refresh_token(user, now)
        except IntegrityError as exc:
            # Token hash already present: a concurrent rotation won the race
            metrics.record_rotation("conflict")
            raise InvalidTokenError("refresh token already rotated") from exc

        if reused_by is not None:
            await self._handle_reuse(reused_by, token_hash)
            raise InvalidTokenError("refresh token already used")

        metrics.record_rotation("rotated")
        metrics.record_session_issued("rotate")
        logger.info(
            "refresh_token_rotated",
            user_id=str(issued.user_id),
            consumed_token_hash=token_hash[:16],
        )
        return issued

    async def revoke(self, raw_refresh_token: str | None) -> bool:
        """
        Revoke a refresh token (logout).

        Idempotent: absent or already-revoked tokens are a no-op.

        Returns:
            True if a live token was revoked by this call
        """
        if not raw_refresh_token:
            return False

        token_hash = self.codec.hash_token(raw_refresh_token)
        async with unit_of_work(self.session):
            stmt = (
                update(RefreshToken)
                .where(RefreshToken.token_hash == token_hash, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True, revoked_at=_utc_now())
            )
            result = await self.session.execute(stmt)
            revoked = bool(result.rowcount)  # type: ignore[attr-defined]

        logger.info("refresh_token_revoked", token_hash=token_hash[:16], revoked=revoked)
        return revoked

    async def revoke_all(self, user_id: UUID) -> int:
        """
        Revoke every live refresh token of a user.

        Returns:
            Number of tokens revoked
        """
        async with unit_of_work(self.session):
            count = await self._revoke_live_tokens(user_id, _utc_now())

        logger.info("user_sessions_revoked", user_id=str(user_id), count=count)
        return count

    async def sweep_expired(
        self,
        retention: timedelta = DEFAULT_REVOKED_RETENTION,
        now: datetime | None = None,
    ) -> int:
        """
        Delete expired tokens and tokens revoked longer ago than retention.

        Returns:
            Number of rows deleted
        """
        now = now or _utc_now()
        cutoff = now - retention
        async with unit_of_work(self.session):
            stmt = delete(RefreshToken).where(
                or_(
                    RefreshToken.expires_at < now,
                    (RefreshToken.is_revoked.is_(True)) & (RefreshToken.revoked_at < cutoff),
                )
            )
            result = await self.session.execute(stmt)
            deleted = result.rowcount or 0  # type: ignore[attr-defined]

        metrics.refresh_tokens_swept_total.inc(deleted)
        logger.info("refresh_tokens_swept", deleted=deleted, revoked_cutoff=cutoff.isoformat())
        return deleted

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _add_refresh_token(self, user: User, now: datetime) -> IssuedSession:
        """Sign a new pair and stage its refresh record in the open transaction."""
        access_token = self.codec.sign_access_token(user.id, user.email, now=now)
        refresh_token, expires_at = self.codec.sign_refresh_token(user.id, user.email, now=now)
        self.session.add(
            RefreshToken(
                id=uuid4(),
                token_hash=self.codec.hash_token(refresh_token),
                user_id=user.id,
                expires_at=expires_at,
                is_revoked=False,
                created_at=now,
            )
        )
        return IssuedSession(
            user_id=user.id,
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_expires_at=expires_at,
        )

    async def _lock_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Lock refresh token row for update (SELECT FOR UPDATE)."""
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _revoke_live_tokens(self, user_id: UUID, now: datetime) -> int:
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
            .values(is_revoked=True, revoked_at=now)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def _handle_reuse(self, user_id: UUID, token_hash: str) -> None:
        """A revoked token was presented again - treat as possible theft."""
        metrics.record_rotation("reused")
        metrics.refresh_token_reuse_total.inc()

        revoked = 0
        if self.reuse_revokes_sessions:
            revoked = await self.revoke_all(user_id)

        logger.warning(
            "refresh_token_reuse_detected",
            user_id=str(user_id),
            token_hash=token_hash[:16],
            sessions_revoked=revoked,
        )
