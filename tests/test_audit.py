"""
Tests for intakeflow/services/audit.py - append-only audit records without personal data.
"""
from sqlalchemy import select

from intakeflow.models.audit_log import AuditLog
from intakeflow.services.audit import (
    AuditAction,
    log_audit_event,
    sanitize_metadata,
)
from intakeflow.utils.logging import set_correlation_id


class TestSanitizeMetadata:
    def test_sensitive_keys_dropped(self):
        clean = sanitize_metadata({"event_id": "mid.1", "text": "hi", "Phone": "555", "name": "Jane"})
        assert clean == {"event_id": "mid.1"}

    def test_empty_metadata(self):
        assert sanitize_metadata(None) == {}


class TestLogAuditEvent:
    async def test_writes_record_with_context_correlation_id(self, db):
        set_correlation_id("cid-audit")
        try:
            entry = await log_audit_event(
                db,
                action=AuditAction.WEBHOOK_RECEIVED,
                resource_type="webhook",
                metadata={"platform": "instagram", "received": 2, "message": "secret text"},
            )
        finally:
            set_correlation_id(None)

        assert entry.correlation_id == "cid-audit"
        assert entry.status == "success"
        assert entry.extra_data == {"platform": "instagram", "received": 2}

    async def test_error_summary_truncated(self, db):
        entry = await log_audit_event(
            db,
            action=AuditAction.TENANT_RESOLUTION,
            resource_type="webhook_event",
            status="failure",
            error_summary="x" * 5000,
        )
        assert len(entry.error_summary) == 1000

    async def test_flushes_without_committing(self, db):
        await log_audit_event(db, action=AuditAction.WEBHOOK_RECEIVED, resource_type="webhook")
        await db.rollback()
        rows = (await db.execute(select(AuditLog))).scalars().all()
        assert rows == []

