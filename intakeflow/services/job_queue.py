"""
Durable job queue backed by the queue_jobs table.

- enqueue: inside the receiver's transaction, idempotent on event_id.
- dequeue: claims the oldest visible job that heads its conversation key
  (no earlier job for the same key exists), leased with a conditional UPDATE so
  two workers can never hold the same job.
- ack: deletes the job, but only while the caller still holds its lease.
- nack: attempt += 1, then reschedules with capped exponential backoff and jitter,
  or moves the job to the dead-letter store in the same transaction. Every failed
  attempt leaves an audit record.

Workers are woken through a Redis list (LPUSH / BRPOP). The notification is
best-effort; the table is the source of truth.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from intakeflow.database import async_session_factory
from intakeflow.models.queue_job import QueueJob
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.services.audit import AuditAction, log_audit_event
from intakeflow.utils.encryption import decrypt_value, encrypt_value
from intakeflow.utils.errors import error_category, error_summary

logger = logging.getLogger(__name__)

QUEUE_NOTIFY_KEY = "intakeflow:queue_notify"
MAX_CLAIM_CANDIDATES = 10

OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_DEAD_LETTERED = "dead_lettered"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_LEASE_LOST = "lease_lost"


@dataclass
class LeasedJob:
    """Snapshot of a claimed job handed to a worker."""
    job_id: uuid.UUID
    event_id: str
    conversation_key: str
    platform: str
    payload: str  # serialised InboundEvent (decrypted)
    attempt: int
    max_attempts: int
    correlation_id: Optional[str]
    lease_owner: str


def compute_backoff(
    attempt: int,
    base: Optional[float] = None,
    cap: Optional[float] = None,
    jitter_ratio: Optional[float] = None,
) -> float:
    """
    Delay in seconds before the next delivery: min(base * 2**attempt, cap) with
    +/- jitter_ratio jitter, never above cap.
    """
    from intakeflow.config import get_settings
    settings = get_settings()
    base = settings.queue_backoff_base_seconds if base is None else base
    cap = settings.queue_backoff_cap_seconds if cap is None else cap
    jitter_ratio = settings.queue_backoff_jitter_ratio if jitter_ratio is None else jitter_ratio

    delay = min(base * (2 ** attempt), cap)
    jitter = delay * jitter_ratio
    return max(0.0, min(cap, delay + random.uniform(-jitter, jitter)))


async def enqueue(
    db: AsyncSession,
    event: InboundEvent,
    max_attempts: Optional[int] = None,
) -> tuple[QueueJob, bool]:
    """
    Add a job for an event to the caller's transaction.
    Idempotent on event_id: returns (existing_job, False) when one is already queued.
    """
    result = await db.execute(select(QueueJob).where(QueueJob.event_id == event.event_id))
    existing = result.scalar_one_or_none()
    if existing is not None:
        return existing, False

    if max_attempts is None:
        from intakeflow.config import get_settings
        max_attempts = get_settings().queue_max_attempts

    now = datetime.now(timezone.utc)
    job = QueueJob(
        job_id=uuid.uuid4(),
        event_id=event.event_id,
        conversation_key=event.conversation_key,
        platform=event.platform,
        payload_encrypted=encrypt_value(event.model_dump_json()),
        correlation_id=event.correlation_id,
        attempt=0,
        max_attempts=max_attempts,
        enqueued_at=now,
        visible_after=now,
        error_history=[],
    )
    db.add(job)
    await db.flush()

    logger.info(
        "Job enqueued: job=%s key=%s",
        str(job.job_id)[:8], event.conversation_key,
        extra={"event_id": event.event_id, "job_id": str(job.job_id)},
    )
    return job, True


async def notify_workers(count: int = 1) -> None:
    """Wake idle workers (best-effort)."""
    try:
        from intakeflow.utils.redis_client import get_redis
        redis = await get_redis()
        for _ in range(max(1, count)):
            await redis.lpush(QUEUE_NOTIFY_KEY, "1")
    except Exception as e:
        logger.debug("Failed to notify workers: %s", str(e))


def _head_of_line():
    """No earlier job with the same conversation key may still be queued."""
    earlier = aliased(QueueJob)
    return ~exists().where(
        earlier.conversation_key == QueueJob.conversation_key,
        earlier.sequence < QueueJob.sequence,
    )


def _not_leased(now: datetime):
    return or_(QueueJob.leased_until.is_(None), QueueJob.leased_until < now)


async def dequeue(worker_id: str, lease_seconds: Optional[int] = None) -> Optional[LeasedJob]:
    """Claim the next deliverable job, or return None when nothing is ready."""
    if lease_seconds is None:
        from intakeflow.config import get_settings
        lease_seconds = get_settings().queue_lease_seconds

    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        result = await db.execute(
            select(QueueJob.sequence)
            .where(
                _head_of_line(),
                QueueJob.visible_after <= now,
                _not_leased(now),
            )
            .order_by(QueueJob.visible_after, QueueJob.sequence)
            .limit(MAX_CLAIM_CANDIDATES)
        )
        candidates = result.scalars().all()

        for sequence in candidates:
            claim = await db.execute(
                update(QueueJob)
                .where(QueueJob.sequence == sequence, _not_leased(now))
                .values(leased_until=now + timedelta(seconds=lease_seconds), lease_owner=worker_id)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                # Another worker won the race for this one
                continue
            await db.commit()

            job = (
                await db.execute(select(QueueJob).where(QueueJob.sequence == sequence))
            ).scalar_one()
            return LeasedJob(
                job_id=job.job_id,
                event_id=job.event_id,
                conversation_key=job.conversation_key,
                platform=job.platform,
                payload=decrypt_value(job.payload_encrypted),
                attempt=job.attempt,
                max_attempts=job.max_attempts,
                correlation_id=job.correlation_id,
                lease_owner=worker_id,
            )

    return None


async def ack(job_id: uuid.UUID, lease_owner: Optional[str] = None) -> bool:
    """
    Delete a completed job. With lease_owner, only while that worker still holds
    the lease. Returns False when the job is gone or was claimed by someone else.
    """
    query = delete(QueueJob).where(QueueJob.job_id == job_id)
    if lease_owner is not None:
        query = query.where(QueueJob.lease_owner == lease_owner)
    async with async_session_factory() as db:
        result = await db.execute(query.execution_options(synchronize_session=False))
        await db.commit()
    deleted = result.rowcount == 1
    if not deleted:
        logger.warning("Ack for unknown job or lease lost: job=%s", str(job_id)[:8])
    return deleted


async def _load_job(db: AsyncSession, job_id: uuid.UUID) -> Optional[QueueJob]:
    result = await db.execute(select(QueueJob).where(QueueJob.job_id == job_id))
    return result.scalar_one_or_none()


def _lease_lost(job: QueueJob, lease_owner: Optional[str]) -> bool:
    if lease_owner is None or job.lease_owner == lease_owner:
        return False
    logger.warning(
        "Lease lost, job now held by another worker: job=%s",
        str(job.job_id)[:8], extra={"event_id": job.event_id},
    )
    return True


async def _record_failure(db: AsyncSession, job: QueueJob, error: BaseException, now: datetime) -> str:
    summary = error_summary(error)
    category = error_category(error)
    job.attempt = job.attempt + 1
    job.last_error = summary
    job.error_history = list(job.error_history or []) + [{
        "attempt": job.attempt,
        "category": category,
        "error": summary,
        "at": now.isoformat(),
    }]
    await log_audit_event(
        db,
        action=AuditAction.WEBHOOK_ATTEMPT_FAILED,
        resource_type="webhook_event",
        resource_id=job.event_id,
        status="failure",
        error_summary=summary,
        metadata={
            "job_id": str(job.job_id),
            "attempt": job.attempt,
            "max_attempts": job.max_attempts,
            "error_category": category,
        },
        correlation_id=job.correlation_id,
    )
    return summary


async def nack(job_id: uuid.UUID, error: BaseException, lease_owner: Optional[str] = None) -> str:
    """
    Record a failed delivery. Reschedules with backoff below max_attempts,
    otherwise replaces the job with a dead-letter entry atomically.
    """
    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        job = await _load_job(db, job_id)
        if job is None:
            logger.warning("Nack for unknown job %s", str(job_id)[:8])
            return OUTCOME_NOT_FOUND
        if _lease_lost(job, lease_owner):
            return OUTCOME_LEASE_LOST

        summary = await _record_failure(db, job, error, now)

        if job.attempt >= job.max_attempts:
            await _move_to_dead_letter(db, job, summary)
            await db.commit()
            logger.error(
                "Job exhausted %d/%d attempts, dead-lettered: job=%s",
                job.attempt, job.max_attempts, str(job.job_id)[:8],
                extra={"event_id": job.event_id, "attempt": job.attempt},
            )
            return OUTCOME_DEAD_LETTERED

        delay = compute_backoff(job.attempt)
        job.visible_after = now + timedelta(seconds=delay)
        job.leased_until = None
        job.lease_owner = None
        await db.commit()

        logger.warning(
            "Job retry %d/%d scheduled in %.1fs: job=%s",
            job.attempt, job.max_attempts, delay, str(job.job_id)[:8],
            extra={"event_id": job.event_id, "attempt": job.attempt, "error_category": error_category(error)},
        )
        return OUTCOME_RETRY_SCHEDULED


async def dead_letter_now(job_id: uuid.UUID, error: BaseException, lease_owner: Optional[str] = None) -> str:
    """Move a permanently failed job straight to the dead-letter store."""
    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        job = await _load_job(db, job_id)
        if job is None:
            return OUTCOME_NOT_FOUND
        if _lease_lost(job, lease_owner):
            return OUTCOME_LEASE_LOST
        summary = await _record_failure(db, job, error, now)
        await _move_to_dead_letter(db, job, summary)
        await db.commit()
    logger.error(
        "Job permanently rejected, dead-lettered: job=%s",
        str(job_id)[:8], extra={"error_category": error_category(error)},
    )
    return OUTCOME_DEAD_LETTERED


async def _move_to_dead_letter(db: AsyncSession, job: QueueJob, last_error: str) -> None:
    from intakeflow.services.dead_letter import store_dead_letter
    from intakeflow.services import idempotency

    await store_dead_letter(db, job, last_error)
    await idempotency.mark_failed(db, job.event_id, last_error, platform=job.platform)
    await db.delete(job)
    await db.flush()


async def queue_depth() -> dict:
    """Counts for the readiness endpoint."""
    from sqlalchemy import func
    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        total = (await db.execute(select(func.count()).select_from(QueueJob))).scalar_one()
        leased = (
            await db.execute(
                select(func.count()).select_from(QueueJob).where(QueueJob.leased_until >= now)
            )
        ).scalar_one()
    return {"queued": total, "leased": leased}
