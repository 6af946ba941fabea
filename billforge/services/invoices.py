"""
Invoice Service - Read access to a user's billing history.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billforge.db.models import Invoice

DEFAULT_INVOICE_LIMIT = 50


class InvoiceService:
    """Lists invoices recorded from Stripe events."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize invoice service with database session."""
        self.session = session

    async def list_invoices(
        self, user_id: UUID, limit: int = DEFAULT_INVOICE_LIMIT
    ) -> list[Invoice]:
        """Most recent invoices first."""
        stmt = (
            select(Invoice)
            .where(Invoice.user_id == user_id)
            .order_by(Invoice.invoice_created_at.desc().nulls_last(), Invoice.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
