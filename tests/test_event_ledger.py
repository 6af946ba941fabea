"""
Tests for EventDedupLedger and AuditLogService.

Both stage rows in the caller's transaction and never commit on their own.
"""

from unittest.mock import AsyncMock
from uuid import uuid4

from billforge.db.models import AuditLog, ProcessedEvent
from billforge.services.audit_log import AuditLogService
from billforge.services.event_ledger import EventDedupLedger


class TestEventDedupLedger:
    """Tests for the processed-events ledger."""

    async def test_unknown_event_not_processed(self, db_session: AsyncMock):
        """No marker row means not processed."""
        ledger = EventDedupLedger(db_session)
        assert await ledger.is_processed("evt_new") is False

    async def test_marked_event_processed(self, db_session: AsyncMock, result_factory):
        """A marker row means processed."""
        db_session.execute = AsyncMock(return_value=result_factory(scalar="evt_seen"))
        ledger = EventDedupLedger(db_session)
        assert await ledger.is_processed("evt_seen") is True

    def test_record_stages_marker_without_commit(self, db_session: AsyncMock):
        """record() adds a marker to the session and leaves commit to the caller."""
        ledger = EventDedupLedger(db_session)

        marker = ledger.record("evt_1", "invoice.paid")

        assert isinstance(marker, ProcessedEvent)
        assert marker.event_id == "evt_1"
        assert marker.event_type == "invoice.paid"
        db_session.add.assert_called_once_with(marker)
        db_session.flush.assert_not_awaited()
        db_session.commit.assert_not_awaited()


class TestAuditLogService:
    """Tests for audit entries."""

    def test_record_stringifies_resource_id(self, db_session: AsyncMock):
        """UUID resource ids are stored as strings."""
        resource_id = uuid4()
        user_id = uuid4()

        entry = AuditLogService(db_session).record(
            action="subscription.manual.created",
            resource_type="subscription",
            resource_id=resource_id,
            user_id=user_id,
            details={"plan_code": "pro"},
        )

        assert isinstance(entry, AuditLog)
        assert entry.resource_id == str(resource_id)
        assert entry.user_id == user_id
        assert entry.details == {"plan_code": "pro"}
        db_session.add.assert_called_once_with(entry)
        db_session.commit.assert_not_awaited()

    def test_record_without_resource(self, db_session: AsyncMock):
        """resource_id is optional."""
        entry = AuditLogService(db_session).record(action="x", resource_type="y")
        assert entry.resource_id is None
