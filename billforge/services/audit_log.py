"""
Audit Log Service - Append-only trail of billing state changes.

Entries are staged in the caller's transaction so they commit (or roll
back) together with the change they describe.
"""

from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from billforge.db.models import AuditLog, utc_now


class AuditLogService:
    """Writes audit entries into the current unit of work."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str | UUID | None = None,
        user_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Stage an audit entry, e.g. action="stripe.invoice.paid"."""
        entry = AuditLog(
            id=uuid4(),
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            created_at=utc_now(),
        )
        self.session.add(entry)
        return entry
