"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


class TokenType(str, Enum):
    """Kind of signed credential."""

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims of an access or refresh credential."""

    user_id: UUID
    email: str
    token_type: TokenType
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedSession:
    """Credential pair handed to a client on register, login or rotation."""

    user_id: UUID
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime

    def __post_init__(self) -> None:
        """Validate both credentials are present."""
        if not self.access_token or not self.refresh_token:
            raise ValueError("Issued session requires both tokens")


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved from a verified access token."""

    user_id: UUID
    email: str


@dataclass(frozen=True)
class AuthSession:
    """Result of register / login / refresh: the user and their credentials."""

    user_id: UUID
    email: str
    name: str
    created_at: datetime
    tokens: IssuedSession


class ReconcileOutcome(str, Enum):
    """What the reconciler did with a provider event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    IGNORED = "ignored"


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout session created with the payment provider."""

    session_id: str
    url: str


@dataclass(frozen=True)
class SummaryCounts:
    """Row counts for the summary report."""

    users_count: int
    subscriptions_count: int
    invoices_count: int
