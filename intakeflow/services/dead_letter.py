"""
Dead-letter store - events that exhausted their attempts or were permanently rejected.

Payloads are stored Fernet-encrypted. Without a key the entry is still stored so the
failure stays visible, but its payload is withheld and it cannot be replayed.
Entries are reviewed through the admin API and can be replayed, which enqueues a
fresh job (attempt 0) and resets the idempotency record.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.models.dead_letter import DeadLetterEntry
from intakeflow.models.queue_job import QueueJob
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.services.audit import AuditAction, log_audit_event
from intakeflow.utils.encryption import (
    EncryptionNotConfiguredError,
    decrypt_payload,
    decrypt_value,
    encrypt_payload,
)

logger = logging.getLogger(__name__)

STATUS_PENDING_REVIEW = "pending_review"
STATUS_REPLAYED = "replayed"


class ReplayNotAllowedError(Exception):
    """The entry was already replayed or has no stored payload."""


async def store_dead_letter(db: AsyncSession, job: QueueJob, last_error: str) -> DeadLetterEntry:
    """
    Persist an exhausted job in the caller's transaction.
    The job payload is re-encrypted in strict mode; without a key it is withheld.
    """
    event = InboundEvent.model_validate_json(decrypt_value(job.payload_encrypted))
    try:
        payload_encrypted = encrypt_payload(event.model_dump_json())
    except EncryptionNotConfiguredError:
        logger.error(
            "ENCRYPTION_KEY not set, dead letter stored without its payload",
            extra={"event_id": job.event_id},
        )
        payload_encrypted = None

    entry = DeadLetterEntry(
        event_id=job.event_id,
        platform=job.platform,
        platform_account_id=event.platform_account_id,
        conversation_key=job.conversation_key,
        payload_encrypted=payload_encrypted,
        last_error=last_error,
        error_history=list(job.error_history or []),
        attempts=job.attempt,
        correlation_id=job.correlation_id,
        status=STATUS_PENDING_REVIEW,
    )
    db.add(entry)
    await db.flush()

    await log_audit_event(
        db,
        action=AuditAction.DEAD_LETTER_STORED,
        resource_type="dead_letter",
        resource_id=str(entry.id),
        status="failure",
        error_summary=last_error,
        metadata={
            "event_id": job.event_id,
            "attempts": job.attempt,
            "platform": job.platform,
            "payload_withheld": payload_encrypted is None,
        },
        correlation_id=job.correlation_id,
    )
    logger.warning(
        "Event dead-lettered: entry=%s attempts=%d",
        str(entry.id)[:8], job.attempt, extra={"event_id": job.event_id},
    )
    return entry


async def list_dead_letters(
    db: AsyncSession,
    status: Optional[str] = STATUS_PENDING_REVIEW,
    limit: int = 50,
    offset: int = 0,
) -> list[DeadLetterEntry]:
    """Entries for review, newest first. Payloads stay encrypted."""
    query = select(DeadLetterEntry).order_by(DeadLetterEntry.stored_at.desc())
    if status:
        query = query.where(DeadLetterEntry.status == status)
    result = await db.execute(query.limit(limit).offset(offset))
    return list(result.scalars().all())


async def get_dead_letter(db: AsyncSession, entry_id: uuid.UUID) -> Optional[DeadLetterEntry]:
    result = await db.execute(select(DeadLetterEntry).where(DeadLetterEntry.id == entry_id))
    return result.scalar_one_or_none()


async def read_dead_letter_payload(
    db: AsyncSession,
    entry: DeadLetterEntry,
    actor_id: Optional[str] = None,
) -> Optional[InboundEvent]:
    """Decrypt the stored event, None when it was withheld. Every read is audited."""
    event = None
    if entry.payload_encrypted is not None:
        event = InboundEvent.model_validate_json(decrypt_payload(entry.payload_encrypted))
    await log_audit_event(
        db,
        action=AuditAction.DEAD_LETTER_ACCESSED,
        resource_type="dead_letter",
        resource_id=str(entry.id),
        actor_id=actor_id,
        metadata={"event_id": entry.event_id, "payload_withheld": event is None},
    )
    return event


async def replay_dead_letter(
    db: AsyncSession,
    entry_id: uuid.UUID,
    actor_id: Optional[str] = None,
) -> Optional[QueueJob]:
    """
    Re-enqueue a dead-lettered event as a fresh job (attempt 0).
    Returns None when the entry does not exist. The caller commits and notifies workers.
    """
    from intakeflow.services import idempotency
    from intakeflow.services.job_queue import enqueue

    entry = await get_dead_letter(db, entry_id)
    if entry is None:
        return None
    if entry.status == STATUS_REPLAYED:
        raise ReplayNotAllowedError(f"Dead letter {entry_id} was already replayed")
    if entry.payload_encrypted is None:
        raise ReplayNotAllowedError(f"Dead letter {entry_id} has no stored payload to replay")

    event = InboundEvent.model_validate_json(decrypt_payload(entry.payload_encrypted))
    await idempotency.reset_to_pending(db, event.event_id, platform=event.platform)
    job, _ = await enqueue(db, event)

    entry.status = STATUS_REPLAYED
    entry.replayed_at = datetime.now(timezone.utc)
    entry.replayed_by = actor_id
    await db.flush()

    await log_audit_event(
        db,
        action=AuditAction.DEAD_LETTER_REPLAYED,
        resource_type="dead_letter",
        resource_id=str(entry.id),
        actor_id=actor_id,
        metadata={"event_id": entry.event_id, "job_id": str(job.job_id)},
    )
    logger.info("Dead letter %s replayed as job %s", str(entry.id)[:8], str(job.job_id)[:8])
    return job
