"""
Report Service - Aggregate counts for the summary report.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billforge.db.models import Invoice, Subscription, User
from billforge.models.domain import SummaryCounts


class ReportService:
    """Builds the tier-gated summary report."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize report service with database session."""
        self.session = session

    async def summary(self) -> SummaryCounts:
        """Count users, subscriptions and invoices."""
        users = await self.session.scalar(select(func.count()).select_from(User))
        subscriptions = await self.session.scalar(select(func.count()).select_from(Subscription))
        invoices = await self.session.scalar(select(func.count()).select_from(Invoice))
        return SummaryCounts(
            users_count=users or 0,
            subscriptions_count=subscriptions or 0,
            invoices_count=invoices or 0,
        )
