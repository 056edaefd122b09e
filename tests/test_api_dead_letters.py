"""
Tests for intakeflow/api/dead_letters.py - admin key guard, listing, audited reads, replay.
"""
import uuid
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from intakeflow.api.dead_letters import get_entry, list_entries, replay_entry, require_admin_key
from intakeflow.models.audit_log import AuditLog
from intakeflow.models.dead_letter import DeadLetterEntry
from intakeflow.models.queue_job import QueueJob
from intakeflow.services import idempotency, job_queue
from intakeflow.services.audit import AuditAction
from intakeflow.utils.errors import MessagingRejectedError

ACTOR = "admin:deadbeef"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _dead_letter(db, make_event, text="book me for tuesday"):
    event = make_event(text)
    await idempotency.mark_pending(db, event.event_id, event.platform)
    await job_queue.enqueue(db, event)
    await db.commit()
    leased = await job_queue.dequeue("w1")
    await job_queue.dead_letter_now(leased.job_id, MessagingRejectedError("HTTP 400 code=100"))
    entry = (await db.execute(select(DeadLetterEntry))).scalar_one()
    return event, entry


# ---------------------------------------------------------------------------
# Admin key
# ---------------------------------------------------------------------------

class TestRequireAdminKey:
    async def test_valid_key_returns_hashed_actor(self):
        actor = await require_admin_key("test-admin-key")
        assert actor.startswith("admin:")
        assert len(actor) == len("admin:") + 8
        assert "test-admin-key" not in actor

    async def test_wrong_key_rejected(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_key("guess")
        assert exc_info.value.status_code == 401

    async def test_missing_key_rejected(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_admin_key("")
        assert exc_info.value.status_code == 401

    async def test_unconfigured_admin_api_unavailable(self):
        settings = MagicMock()
        settings.admin_api_key = ""
        with patch("intakeflow.config.get_settings", return_value=settings):
            with pytest.raises(HTTPException) as exc_info:
                await require_admin_key("anything")
        assert exc_info.value.status_code == 503


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

class TestListEntries:
    async def test_lists_pending_without_payload(self, db, make_event):
        _, entry = await _dead_letter(db, make_event)

        response = await list_entries(status="pending_review", limit=50, offset=0, actor_id=ACTOR, db=db)

        assert response.count == 1
        summary = response.entries[0]
        assert summary.id == str(entry.id)
        assert summary.attempts == entry.attempts
        assert "book me" not in summary.model_dump_json()

    async def test_empty_status_lists_everything(self, db, make_event):
        await _dead_letter(db, make_event)
        response = await list_entries(status="", limit=50, offset=0, actor_id=ACTOR, db=db)
        assert response.count == 1

    async def test_other_status_filtered_out(self, db, make_event):
        await _dead_letter(db, make_event)
        response = await list_entries(status="replayed", limit=50, offset=0, actor_id=ACTOR, db=db)
        assert response.count == 0


class TestGetEntry:
    async def test_returns_payload_and_audits_read(self, db, make_event):
        event, entry = await _dead_letter(db, make_event)

        detail = await get_entry(str(entry.id), actor_id=ACTOR, db=db)

        assert detail.payload["text"] == "book me for tuesday"
        assert detail.payload["event_id"] == event.event_id
        assert detail.error_history
        reads = (
            await db.execute(select(AuditLog).where(AuditLog.action == AuditAction.DEAD_LETTER_ACCESSED))
        ).scalars().all()
        assert len(reads) == 1
        assert reads[0].actor_id == ACTOR
        assert detail.payload_withheld is False

    async def test_withheld_payload_reported(self, db, make_event):
        _, entry = await _dead_letter(db, make_event)
        entry.payload_encrypted = None
        await db.commit()

        detail = await get_entry(str(entry.id), actor_id=ACTOR, db=db)

        assert detail.payload == {}
        assert detail.payload_withheld is True

        with pytest.raises(HTTPException) as exc_info:
            await replay_entry(str(entry.id), actor_id=ACTOR, db=db)
        assert exc_info.value.status_code == 409

    async def test_unknown_id_not_found(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await get_entry(str(uuid.uuid4()), actor_id=ACTOR, db=db)
        assert exc_info.value.status_code == 404

    async def test_malformed_id_not_found(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await get_entry("not-a-uuid", actor_id=ACTOR, db=db)
        assert exc_info.value.status_code == 404


class TestReplayEntry:
    async def test_replay_enqueues_fresh_job(self, db, make_event, mock_redis):
        event, entry = await _dead_letter(db, make_event)

        response = await replay_entry(str(entry.id), actor_id=ACTOR, db=db)

        assert response.status == "replayed"
        assert response.dead_letter_id == str(entry.id)
        job = (
            await db.execute(select(QueueJob).execution_options(populate_existing=True))
        ).scalar_one()
        assert str(job.job_id) == response.job_id
        assert job.attempt == 0
        assert await idempotency.get_status(db, event.event_id) == idempotency.STATUS_PENDING
        mock_redis.lpush.assert_awaited()

    async def test_second_replay_conflicts(self, db, make_event):
        _, entry = await _dead_letter(db, make_event)
        await replay_entry(str(entry.id), actor_id=ACTOR, db=db)

        with pytest.raises(HTTPException) as exc_info:
            await replay_entry(str(entry.id), actor_id=ACTOR, db=db)
        assert exc_info.value.status_code == 409

    async def test_unknown_entry_not_found(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await replay_entry(str(uuid.uuid4()), actor_id=ACTOR, db=db)
        assert exc_info.value.status_code == 404
