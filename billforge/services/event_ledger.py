"""
Event Dedup Ledger - Record of fully applied Stripe events.

A marker is written in the same transaction as the state change it guards,
so "applied" and "marked" can never diverge. The primary key on event_id
rejects a concurrent second insert of the same event.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billforge.db.models import ProcessedEvent, utc_now


class EventDedupLedger:
    """Deduplication barrier for at-least-once webhook delivery."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with the session whose transaction markers join."""
        self.session = session

    async def is_processed(self, event_id: str) -> bool:
        """Check whether an event has already been fully applied."""
        stmt = select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    def record(self, event_id: str, event_type: str) -> ProcessedEvent:
        """
        Stage a marker in the caller's open transaction.

        Nothing is flushed here: the caller commits the marker together with
        the mutation it guards.
        """
        marker = ProcessedEvent(event_id=event_id, event_type=event_type, processed_at=utc_now())
        self.session.add(marker)
        return marker
