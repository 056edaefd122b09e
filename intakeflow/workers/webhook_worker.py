"""
Webhook worker pool - drains the durable job queue.

N asyncio workers share one queue. Each worker claims the head job of some
conversation (per-conversation order, cross-conversation concurrency), runs the
conductor, commits the new state, notifies the owner of a new booking, sends the
reply, then marks the event processed and acks. Each commit is bounded by
persistence_timeout_seconds. Failures map to an ack / nack / dead-letter decision
by error category. Settling a job requires still holding its lease.

Wakes on a Redis BRPOP notification with a DB poll fallback. On shutdown the pool
stops claiming new jobs and lets in-flight jobs finish within the grace period;
anything still running after that is cancelled and its lease simply expires.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.agents.conductor import advance_conversation
from intakeflow.database import async_session_factory
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.services import idempotency, job_queue
from intakeflow.services.audit import AuditAction, log_audit_event
from intakeflow.services.booking import BookingAdapter, DatabaseBookingAdapter
from intakeflow.services.messaging import GraphMessagingAdapter, MessagingAdapter, send_message
from intakeflow.services.notifications import notify_owner_booking
from intakeflow.services.tenants import resolve_tenant
from intakeflow.utils.alerting import AlertType, record_internal_error, send_alert
from intakeflow.utils.errors import (
    MessagingRejectedError,
    PayloadValidationError,
    PipelineError,
    TenantNotFoundError,
    TransientError,
    error_category,
    error_summary,
)
from intakeflow.utils.logging import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "intakeflow:worker_health:webhook_worker"
HEARTBEAT_INTERVAL_SECONDS = 30
ERROR_BACKOFF_SECONDS = 1.0

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_DROPPED = "dropped"


async def _heartbeat(active_workers: int) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        from intakeflow.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY,
            f"{datetime.now(timezone.utc).isoformat()}|{active_workers}",
            ex=HEARTBEAT_INTERVAL_SECONDS * 4,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def _commit(db: AsyncSession) -> None:
    """Commit within the persistence timeout. A slow or unreachable store is a transient failure."""
    from intakeflow.config import get_settings
    timeout = get_settings().persistence_timeout_seconds
    try:
        await asyncio.wait_for(db.commit(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientError(f"State commit timed out after {timeout:.0f}s") from e
    except OperationalError as e:
        raise TransientError(f"State store unavailable: {e.__class__.__name__}") from e


async def process_job(
    job: job_queue.LeasedJob,
    booking: BookingAdapter,
    messaging: MessagingAdapter,
) -> str:
    """
    Run one leased job to completion and settle it with the queue.
    Returns the outcome (processed, duplicate, dropped, retry_scheduled, dead_lettered).
    """
    set_correlation_id(job.correlation_id or generate_correlation_id())
    log_extra = {"event_id": job.event_id, "job_id": str(job.job_id), "attempt": job.attempt}

    try:
        try:
            event = InboundEvent.model_validate_json(job.payload)
        except ValidationError as e:
            raise PayloadValidationError("Queued payload is not a valid inbound event") from e

        async with async_session_factory() as db:
            if await idempotency.get_status(db, event.event_id) == idempotency.STATUS_PROCESSED:
                logger.info("Event already processed, acking duplicate delivery", extra=log_extra)
                await job_queue.ack(job.job_id, lease_owner=job.lease_owner)
                return OUTCOME_DUPLICATE

            tenant = await resolve_tenant(db, event.platform, event.platform_account_id)
            result = await advance_conversation(db, tenant, event, booking)
            # State is durable before anything leaves the process
            await _commit(db)

        owner_notified = False
        if result.booked:
            owner_notified = await notify_owner_booking(
                tenant, result.booking_reference, result.booked_slot, correlation_id=event.correlation_id,
            )

        if result.reply:
            await send_message(
                messaging,
                tenant.platform_account_id,
                event.sender_external_id,
                result.reply,
                correlation_id=event.correlation_id,
                access_token=tenant.access_token,
            )

        async with async_session_factory() as db:
            await idempotency.mark_processed(db, event.event_id, platform=event.platform)
            await log_audit_event(
                db,
                action=AuditAction.WEBHOOK_PROCESSED,
                resource_type="conversation",
                resource_id=str(result.conversation_id),
                metadata={
                    **result.audit_metadata(),
                    "event_id": event.event_id,
                    "job_id": str(job.job_id),
                    "attempt": job.attempt,
                    "owner_notified": owner_notified,
                },
            )
            await _commit(db)

        await job_queue.ack(job.job_id, lease_owner=job.lease_owner)
        logger.info("Event processed (step=%s)", result.step, extra={**log_extra, "step": result.step})
        return OUTCOME_PROCESSED

    except (PayloadValidationError, TenantNotFoundError) as e:
        return await _drop_event(job, e)

    except MessagingRejectedError as e:
        logger.error("Send API permanently rejected reply: %s", e.summary(), extra=log_extra)
        outcome = await job_queue.dead_letter_now(job.job_id, e, lease_owner=job.lease_owner)
        await send_alert(
            AlertType.DEAD_LETTER_EXHAUSTED,
            f"Event {job.event_id} dead-lettered: {e.summary()}",
            extra={"job_id": str(job.job_id)},
        )
        return outcome

    except Exception as e:
        category = error_category(e)
        if isinstance(e, PipelineError):
            logger.warning(
                "Job failed (%s), will retry: %s", category, error_summary(e),
                extra={**log_extra, "error_category": category},
            )
        else:
            logger.exception(
                "Unexpected error processing job: %s", e.__class__.__name__,
                extra={**log_extra, "error_category": category},
            )
            await record_internal_error(job.event_id)

        outcome = await job_queue.nack(job.job_id, e, lease_owner=job.lease_owner)
        if outcome == job_queue.OUTCOME_DEAD_LETTERED:
            await send_alert(
                AlertType.DEAD_LETTER_EXHAUSTED,
                f"Event {job.event_id} exhausted {job.max_attempts} attempts: {error_summary(e)}",
                extra={"job_id": str(job.job_id), "category": category},
            )
        return outcome


async def _drop_event(job: job_queue.LeasedJob, error: PipelineError) -> str:
    """Validation / linkage failures: never retried, recorded and acked."""
    is_linkage = isinstance(error, TenantNotFoundError)
    logger.warning(
        "Dropping event (%s): %s", error.category, error.summary(),
        extra={"event_id": job.event_id, "job_id": str(job.job_id), "error_category": error.category},
    )
    async with async_session_factory() as db:
        await idempotency.mark_failed(db, job.event_id, error.summary(), platform=job.platform)
        await log_audit_event(
            db,
            action=AuditAction.TENANT_RESOLUTION if is_linkage else AuditAction.WEBHOOK_PAYLOAD_INVALID,
            resource_type="webhook_event",
            resource_id=job.event_id,
            status="failure",
            error_summary=error.summary(),
            metadata={"job_id": str(job.job_id), "platform": job.platform, "category": error.category},
        )
        await _commit(db)
    await job_queue.ack(job.job_id, lease_owner=job.lease_owner)
    return OUTCOME_DROPPED


class WebhookWorkerPool:
    """Fixed-size pool of queue consumers."""

    def __init__(
        self,
        concurrency: Optional[int] = None,
        booking: Optional[BookingAdapter] = None,
        messaging: Optional[MessagingAdapter] = None,
        poll_interval: Optional[float] = None,
    ):
        from intakeflow.config import get_settings
        settings = get_settings()
        self.concurrency = concurrency or settings.webhook_worker_concurrency
        self.poll_interval = poll_interval or settings.queue_poll_interval_seconds
        self.booking = booking or DatabaseBookingAdapter()
        self.messaging = messaging or GraphMessagingAdapter()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._busy = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        base = uuid.uuid4().hex[:6]
        for i in range(self.concurrency):
            worker_id = f"webhook-{base}-{i}"
            self._tasks.append(asyncio.create_task(self._run_worker(worker_id), name=worker_id))
        self._tasks.append(asyncio.create_task(self._run_heartbeat(), name="webhook-heartbeat"))
        logger.info("Webhook worker pool started (%d workers)", self.concurrency)

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop claiming jobs, wait for in-flight work, cancel what is left."""
        if not self._tasks:
            return
        if grace_seconds is None:
            from intakeflow.config import get_settings
            grace_seconds = get_settings().worker_shutdown_grace_seconds

        self._stopping.set()
        done, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d workers after %.0fs grace period", len(pending), grace_seconds)
        self._tasks = []
        logger.info("Webhook worker pool stopped")

    async def _run_worker(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await job_queue.dequeue(worker_id)
                if job is not None:
                    self._busy += 1
                    try:
                        await process_job(job, self.booking, self.messaging)
                    finally:
                        self._busy -= 1
                    continue
                await self._wait_for_work()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Job stays leased; it becomes deliverable again when the lease expires
                logger.error("Worker %s cycle error: %s", worker_id, str(e), extra={"worker_id": worker_id})
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def _wait_for_work(self) -> None:
        """Block until a Redis notification, the poll interval, or shutdown."""
        try:
            from intakeflow.utils.redis_client import get_redis
            redis = await get_redis()
            await redis.brpop(job_queue.QUEUE_NOTIFY_KEY, timeout=max(1, int(self.poll_interval)))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _run_heartbeat(self) -> None:
        while not self._stopping.is_set():
            await _heartbeat(self._busy)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=HEARTBEAT_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                pass
