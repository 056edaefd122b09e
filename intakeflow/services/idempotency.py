"""
Idempotency store - tracks each inbound event id through pending -> processed | failed.

The receiver consults it before enqueueing; the worker marks an event processed as the
final write of a successful job, so a redelivered job that finds `processed` is acked
without side effects.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.models.webhook_idempotency import WebhookIdempotency

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"

# Statuses that make a redelivered event a duplicate
FINAL_STATUSES = (STATUS_PROCESSED, STATUS_FAILED)


async def get_record(db: AsyncSession, event_id: str) -> Optional[WebhookIdempotency]:
    result = await db.execute(
        select(WebhookIdempotency).where(WebhookIdempotency.event_id == event_id)
    )
    return result.scalar_one_or_none()


async def get_status(db: AsyncSession, event_id: str) -> Optional[str]:
    """Current status for an event id, or None when never seen."""
    record = await get_record(db, event_id)
    return record.status if record else None


async def is_duplicate(db: AsyncSession, event_id: str) -> bool:
    """True when the event already reached a final status."""
    return (await get_status(db, event_id)) in FINAL_STATUSES


async def mark_pending(
    db: AsyncSession,
    event_id: str,
    platform: str,
    payload_hash: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> WebhookIdempotency:
    """
    Insert a pending record (or return the existing one).
    A concurrent insert of the same id surfaces as IntegrityError on flush/commit.
    """
    record = await get_record(db, event_id)
    if record is not None:
        return record

    record = WebhookIdempotency(
        event_id=event_id,
        platform=platform,
        status=STATUS_PENDING,
        payload_hash=payload_hash,
        correlation_id=correlation_id,
    )
    db.add(record)
    await db.flush()
    return record


async def _set_status(
    db: AsyncSession,
    event_id: str,
    status: str,
    platform: str = "unknown",
    error_summary: Optional[str] = None,
) -> WebhookIdempotency:
    record = await get_record(db, event_id)
    if record is None:
        record = WebhookIdempotency(event_id=event_id, platform=platform)
        db.add(record)

    now = datetime.now(timezone.utc)
    record.status = status
    record.updated_at = now
    if status == STATUS_PROCESSED:
        record.processed_at = now
        record.error_summary = None
    elif error_summary is not None:
        record.error_summary = error_summary[:1000]
    await db.flush()
    return record


async def mark_processed(db: AsyncSession, event_id: str, platform: str = "unknown") -> WebhookIdempotency:
    return await _set_status(db, event_id, STATUS_PROCESSED, platform)


async def mark_failed(
    db: AsyncSession,
    event_id: str,
    error_summary: str,
    platform: str = "unknown",
) -> WebhookIdempotency:
    return await _set_status(db, event_id, STATUS_FAILED, platform, error_summary)


async def reset_to_pending(db: AsyncSession, event_id: str, platform: str = "unknown") -> WebhookIdempotency:
    """Used by dead-letter replay: the event becomes processable again."""
    record = await _set_status(db, event_id, STATUS_PENDING, platform)
    record.processed_at = None
    return record
