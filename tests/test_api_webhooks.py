"""
Tests for intakeflow/api/webhooks.py - signature check, dedupe, tenant drop, durable enqueue.
"""
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from intakeflow.api.webhooks import receive_webhook, verify_subscription
from intakeflow.models.audit_log import AuditLog
from intakeflow.models.queue_job import QueueJob
from intakeflow.models.webhook_idempotency import WebhookIdempotency
from intakeflow.services import idempotency, job_queue
from intakeflow.services.audit import AuditAction
from intakeflow.utils.webhook_signatures import SIGNATURE_HEADER, compute_signature
from intakeflow.workers.webhook_worker import OUTCOME_PROCESSED, process_job

ACCOUNT_ID = "17841400000001"
SECRET = "test-app-secret"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _body(*messages, account=ACCOUNT_ID) -> bytes:
    """Graph-style envelope; each message is (mid, sender, text)."""
    return json.dumps({
        "object": "instagram",
        "entry": [{
            "id": account,
            "time": 1_700_000_000_000,
            "messaging": [
                {
                    "sender": {"id": sender},
                    "recipient": {"id": account},
                    "timestamp": 1_700_000_000_000,
                    "message": {"mid": mid, "text": text},
                }
                for mid, sender, text in messages
            ],
        }],
    }).encode()


def _make_request(body: bytes = b"", signature: str | None = None, query: dict | None = None):
    """Build a mock FastAPI Request with the fields the webhook handlers access."""
    req = MagicMock()
    req.client = MagicMock()
    req.client.host = "127.0.0.1"
    headers = {}
    if signature is not None:
        headers[SIGNATURE_HEADER] = signature
    req.headers = headers
    req.body = AsyncMock(return_value=body)
    req.query_params = query or {}
    return req


def _signed(body: bytes):
    return _make_request(body, compute_signature(SECRET, body))


async def _rows(db, model):
    result = await db.execute(select(model).execution_options(populate_existing=True))
    return list(result.scalars().all())


async def _actions(db):
    return [a.action for a in await _rows(db, AuditLog)]


# ---------------------------------------------------------------------------
# Subscription handshake
# ---------------------------------------------------------------------------

class TestVerifySubscription:
    async def test_matching_token_echoes_challenge(self):
        request = _make_request(query={
            "hub.mode": "subscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "1158201444",
        })
        response = await verify_subscription("instagram", request)
        assert response.body == b"1158201444"

    async def test_wrong_token_forbidden(self):
        request = _make_request(query={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"})
        with pytest.raises(HTTPException) as exc_info:
            await verify_subscription("instagram", request)
        assert exc_info.value.status_code == 403

    async def test_unsupported_platform(self):
        with pytest.raises(HTTPException) as exc_info:
            await verify_subscription("myspace", _make_request())
        assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# Receive
# ---------------------------------------------------------------------------

class TestReceiveWebhook:
    async def test_signed_batch_enqueued(self, db, tenant, mock_redis):
        body = _body(("mid.1", "user-1", "Hi"), ("mid.2", "user-2", "Hello"))

        response = await receive_webhook("instagram", _signed(body), db)

        assert response.status == "accepted"
        assert (response.received, response.enqueued, response.duplicates, response.dropped) == (2, 2, 0, 0)
        jobs = await _rows(db, QueueJob)
        assert sorted(j.event_id for j in jobs) == ["mid.1", "mid.2"]
        assert await idempotency.get_status(db, "mid.1") == idempotency.STATUS_PENDING
        assert mock_redis.lpush.await_count == 2
        received = [a for a in await _rows(db, AuditLog) if a.action == AuditAction.WEBHOOK_RECEIVED]
        assert received[0].extra_data["enqueued"] == 2
        assert "Hi" not in str(received[0].extra_data)

    async def test_invalid_signature_rejected_and_audited(self, db, tenant):
        body = _body(("mid.1", "user-1", "Hi"))
        request = _make_request(body, "sha256=" + "0" * 64)

        with pytest.raises(HTTPException) as exc_info:
            await receive_webhook("instagram", request, db)

        assert exc_info.value.status_code == 401
        assert await _rows(db, QueueJob) == []
        assert await _actions(db) == [AuditAction.WEBHOOK_SIGNATURE_FAILED]

    async def test_missing_signature_rejected(self, db, tenant):
        with pytest.raises(HTTPException) as exc_info:
            await receive_webhook("instagram", _make_request(_body(("mid.1", "user-1", "Hi"))), db)
        assert exc_info.value.status_code == 401

    async def test_repeated_delivery_enqueues_one_job(self, db, tenant):
        body = _body(("mid.1", "user-1", "Hi"))

        responses = [await receive_webhook("instagram", _signed(body), db) for _ in range(3)]

        assert [r.enqueued for r in responses] == [1, 0, 0]
        assert [r.duplicates for r in responses] == [0, 1, 1]
        assert len(await _rows(db, QueueJob)) == 1
        assert len(await _rows(db, WebhookIdempotency)) == 1

    async def test_redelivery_after_processing_is_duplicate(self, db, tenant):
        body = _body(("mid.1", "user-1", "Hi"))
        await receive_webhook("instagram", _signed(body), db)
        await db.commit()
        leased = await job_queue.dequeue("w1")
        await job_queue.ack(leased.job_id)
        await idempotency.mark_processed(db, "mid.1")
        await db.commit()

        response = await receive_webhook("instagram", _signed(body), db)

        assert response.duplicates == 1
        assert await _rows(db, QueueJob) == []

    async def test_unlinked_account_dropped_with_audit(self, db):
        body = _body(("mid.1", "user-1", "Hi"), account="999")

        response = await receive_webhook("instagram", _signed(body), db)

        assert response.status == "accepted"
        assert response.dropped == 1
        assert response.enqueued == 0
        assert await _rows(db, QueueJob) == []
        assert await _rows(db, WebhookIdempotency) == []
        tenant_audits = [a for a in await _rows(db, AuditLog) if a.action == AuditAction.TENANT_RESOLUTION]
        assert len(tenant_audits) == 1
        assert tenant_audits[0].status == "failure"
        assert tenant_audits[0].resource_id == "mid.1"

    async def test_malformed_json_acknowledged_and_ignored(self, db, tenant):
        body = b"{not json"
        response = await receive_webhook("instagram", _signed(body), db)

        assert response.status == "ignored"
        assert await _rows(db, QueueJob) == []
        assert await _actions(db) == [AuditAction.WEBHOOK_PAYLOAD_INVALID]

    async def test_wrong_shape_acknowledged_and_ignored(self, db, tenant):
        body = json.dumps({"entry": "nope"}).encode()
        response = await receive_webhook("instagram", _signed(body), db)
        assert response.status == "ignored"

    async def test_echoes_counted_as_skipped(self, db, tenant):
        body = json.dumps({
            "object": "instagram",
            "entry": [{"id": ACCOUNT_ID, "messaging": [{
                "sender": {"id": ACCOUNT_ID}, "recipient": {"id": "user-1"},
                "message": {"mid": "mid.echo", "text": "our reply", "is_echo": True},
            }]}],
        }).encode()

        response = await receive_webhook("instagram", _signed(body), db)

        assert response.received == 0
        assert response.skipped == 1

    async def test_queue_write_failure_returns_503(self, db, tenant):
        body = _body(("mid.1", "user-1", "Hi"))
        with patch(
            "intakeflow.api.webhooks.enqueue",
            new_callable=AsyncMock,
            side_effect=OperationalError("INSERT", {}, Exception("db down")),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await receive_webhook("instagram", _signed(body), db)
        assert exc_info.value.status_code == 503

    async def test_unsupported_platform(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await receive_webhook("myspace", _make_request(b"{}"), db)
        assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# Receive through to reply
# ---------------------------------------------------------------------------

class TestRepeatedDeliveryEndToEnd:
    async def test_three_deliveries_produce_one_reply(
        self, db, tenant, mock_redis, fake_booking, fake_messaging, mock_classifier
    ):
        body = _body(("mid.1", "user-1", "Hi, I'd like to book"))

        responses = [await receive_webhook("instagram", _signed(body), db) for _ in range(3)]
        assert [r.status for r in responses] == ["accepted"] * 3

        outcomes = []
        leased = await job_queue.dequeue("w1")
        while leased is not None:
            outcomes.append(await process_job(leased, fake_booking, fake_messaging))
            leased = await job_queue.dequeue("w1")

        assert outcomes == [OUTCOME_PROCESSED]
        assert [m["text"] for m in fake_messaging.sent] == ["What's your full name?"]
        assert mock_classifier.await_count == 1

        # Platform retries once more after the reply went out
        db.expire_all()
        late = await receive_webhook("instagram", _signed(body), db)

        assert late.status == "accepted"
        assert late.duplicates == 1
        assert await job_queue.dequeue("w1") is None
        assert len(fake_messaging.sent) == 1
        db.expire_all()
        assert await idempotency.get_status(db, "mid.1") == idempotency.STATUS_PROCESSED
