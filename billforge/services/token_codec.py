"""
Token Codec - Signing and verification of session credentials.

Pure functions over PyJWT (HS256). No I/O, no storage.

Access and refresh tokens are signed with different secrets and carry a
"typ" claim, so one can never be accepted in place of the other. Every
token carries a random jti, making each issued value unique.
"""

import hashlib
import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import jwt

from billforge.exceptions import ExpiredTokenError, InvalidTokenError
from billforge.models.domain import TokenClaims, TokenType

if TYPE_CHECKING:
    from billforge.config import Settings

REQUIRED_CLAIMS = ["sub", "email", "typ", "jti", "iat", "exp"]


class TokenCodec:
    """
    Stateless signer/verifier for access and refresh credentials.

    Usage:
        codec = TokenCodec.from_settings(settings)
        token = codec.sign_access_token(user.id, user.email)
        claims = codec.verify_access_token(token)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        algorithm: str = "HS256",
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("Token secrets cannot be empty")
        self._secrets = {TokenType.ACCESS: access_secret, TokenType.REFRESH: refresh_secret}
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TokenCodec":
        """Build a codec from application settings."""
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.refresh_token_secret,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )

    @staticmethod
    def hash_token(token: str) -> str:
        """
        Hash a token using SHA-256.

        Refresh credentials are stored and looked up by this hash only,
        so a leaked table does not yield usable tokens.
        """
        return hashlib.sha256(token.encode()).hexdigest()

    def sign_access_token(self, user_id: UUID, email: str, now: datetime | None = None) -> str:
        """Sign a short-lived access token."""
        token, _ = self._sign(TokenType.ACCESS, user_id, email, self.access_ttl, now)
        return token

    def sign_refresh_token(
        self, user_id: UUID, email: str, now: datetime | None = None
    ) -> tuple[str, datetime]:
        """Sign a long-lived refresh token, returning it with its expiry."""
        return self._sign(TokenType.REFRESH, user_id, email, self.refresh_ttl, now)

    def verify_access_token(self, token: str) -> TokenClaims:
        """
        Verify an access token.

        Raises:
            ExpiredTokenError: Signature valid but exp has passed
            InvalidTokenError: Malformed, badly signed, wrong type, missing claims
        """
        return self._verify(token, TokenType.ACCESS, verify_exp=True)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        """
        Verify a refresh token's signature, type and shape.

        Expiry is NOT enforced here - the stored credential's expires_at is
        authoritative, so an expired-but-unrevoked credential is reported as
        expired only after the revocation check.

        Raises:
            InvalidTokenError: Malformed, badly signed, wrong type, missing claims
        """
        return self._verify(token, TokenType.REFRESH, verify_exp=False)

    def _sign(
        self,
        token_type: TokenType,
        user_id: UUID,
        email: str,
        ttl: timedelta,
        now: datetime | None,
    ) -> tuple[str, datetime]:
        issued_at = now or datetime.now(UTC)
        expires_at = issued_at + ttl
        payload = {
            "sub": str(user_id),
            "email": email,
            "typ": token_type.value,
            "jti": secrets.token_urlsafe(16),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._secrets[token_type], algorithm=self.algorithm)
        return token, expires_at

    def _verify(self, token: str, token_type: TokenType, verify_exp: bool) -> TokenClaims:
        if not token:
            raise InvalidTokenError(f"missing {token_type.value} token")

        try:
            payload = jwt.decode(
                token,
                self._secrets[token_type],
                algorithms=[self.algorithm],
                options={"require": REQUIRED_CLAIMS, "verify_exp": verify_exp},
            )
        except jwt.ExpiredSignatureError as exc:
            raise ExpiredTokenError(token_type.value) from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError(f"{token_type.value} token rejected: {exc}") from exc

        if payload.get("typ") != token_type.value:
            raise InvalidTokenError(f"expected {token_type.value} token")

        try:
            user_id = UUID(str(payload["sub"]))
            issued_at = datetime.fromtimestamp(int(payload["iat"]), UTC)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), UTC)
        except (TypeError, ValueError) as exc:
            raise InvalidTokenError(f"malformed {token_type.value} token claims") from exc

        return TokenClaims(
            user_id=user_id,
            email=str(payload["email"]),
            token_type=token_type,
            token_id=str(payload["jti"]),
            issued_at=issued_at,
            expires_at=expires_at,
        )
