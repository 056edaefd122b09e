"""
Webhook endpoints - receive direct-message events from messaging platforms.

Security layers (in order):
1. Signature validation (X-Hub-Signature-256, HMAC-SHA256 of the raw body)
2. Envelope validation (malformed bodies are acknowledged and ignored)
3. Tenant resolution (events for unlinked accounts are dropped)
4. Idempotency check + durable enqueue, one transaction per event

The receiver never calls the classifier, booking or send adapters; it only
persists work for the worker pool and answers fast.
"""
import hmac
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.database import get_db
from intakeflow.schemas.api_responses import WebhookReceiptResponse
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.schemas.webhook_payloads import extract_inbound_events, parse_envelope
from intakeflow.services import idempotency
from intakeflow.services.audit import AuditAction, log_audit_event
from intakeflow.services.job_queue import enqueue, notify_workers
from intakeflow.services.tenants import resolve_tenant
from intakeflow.utils.errors import PayloadValidationError, TenantNotFoundError
from intakeflow.utils.logging import get_correlation_id
from intakeflow.utils.webhook_signatures import (
    SIGNATURE_HEADER,
    compute_payload_hash,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

SUPPORTED_PLATFORMS = ("instagram", "messenger")

OUTCOME_ENQUEUED = "enqueued"
OUTCOME_DUPLICATE = "duplicates"
OUTCOME_DROPPED = "dropped"


def _check_platform(platform: str) -> None:
    if platform not in SUPPORTED_PLATFORMS:
        raise HTTPException(status_code=404, detail="Unsupported platform")


@router.get("/{platform}")
async def verify_subscription(platform: str, request: Request):
    """Subscription handshake: echo hub.challenge when the verify token matches."""
    from intakeflow.config import get_settings
    settings = get_settings()
    _check_platform(platform)

    params = request.query_params
    mode = params.get("hub.mode", "")
    token = params.get("hub.verify_token", "")
    challenge = params.get("hub.challenge", "")

    if (
        mode == "subscribe"
        and settings.webhook_verify_token
        and hmac.compare_digest(token, settings.webhook_verify_token)
    ):
        logger.info("Webhook subscription verified for %s", platform)
        return PlainTextResponse(challenge)

    logger.warning("Webhook subscription verification failed for %s", platform)
    raise HTTPException(status_code=403, detail="Verification failed")


async def _accept_event(db: AsyncSession, event: InboundEvent, payload_hash: str) -> str:
    """Resolve, dedupe and enqueue one event inside the caller's transaction."""
    try:
        await resolve_tenant(db, event.platform, event.platform_account_id)
    except TenantNotFoundError as e:
        await log_audit_event(
            db,
            action=AuditAction.TENANT_RESOLUTION,
            resource_type="webhook_event",
            resource_id=event.event_id,
            status="failure",
            error_summary=e.summary(),
            metadata={"platform": event.platform, "platform_account_id": event.platform_account_id},
        )
        return OUTCOME_DROPPED

    if await idempotency.is_duplicate(db, event.event_id):
        logger.info("Duplicate delivery ignored", extra={"event_id": event.event_id, "platform": event.platform})
        return OUTCOME_DUPLICATE

    await idempotency.mark_pending(
        db, event.event_id, event.platform,
        payload_hash=payload_hash, correlation_id=event.correlation_id,
    )
    _, created = await enqueue(db, event)
    return OUTCOME_ENQUEUED if created else OUTCOME_DUPLICATE


@router.post("/{platform}", response_model=WebhookReceiptResponse)
async def receive_webhook(
    platform: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Inbound messaging webhook.
    200 once every event is durably queued (or deliberately ignored);
    503 when the queue cannot be written so the platform redelivers.
    """
    _check_platform(platform)

    body = await request.body()
    payload_hash = compute_payload_hash(body)

    if not verify_webhook_signature(request.headers.get(SIGNATURE_HEADER, ""), body):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning("Invalid webhook signature: platform=%s ip=%s", platform, client_ip)
        await log_audit_event(
            db,
            action=AuditAction.WEBHOOK_SIGNATURE_FAILED,
            resource_type="webhook",
            status="failure",
            error_summary="Signature mismatch or missing",
            metadata={"platform": platform, "payload_hash": payload_hash},
        )
        await db.commit()
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise PayloadValidationError("Webhook body is not valid JSON") from e
        envelope = parse_envelope(data)
    except PayloadValidationError as e:
        # Unrecoverable: acknowledge so the platform stops redelivering
        logger.warning("Ignoring malformed %s webhook: %s", platform, e.summary())
        await log_audit_event(
            db,
            action=AuditAction.WEBHOOK_PAYLOAD_INVALID,
            resource_type="webhook",
            status="failure",
            error_summary=e.summary(),
            metadata={"platform": platform, "payload_hash": payload_hash},
        )
        await db.commit()
        return WebhookReceiptResponse(status="ignored", message="Malformed payload")

    events, skipped = extract_inbound_events(platform, envelope, get_correlation_id())
    counts = {OUTCOME_ENQUEUED: 0, OUTCOME_DUPLICATE: 0, OUTCOME_DROPPED: 0}

    for event in events:
        try:
            outcome = await _accept_event(db, event, payload_hash)
            await db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await db.rollback()
            outcome = OUTCOME_DUPLICATE
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(
                "Failed to enqueue event: %s", e.__class__.__name__,
                extra={"event_id": event.event_id, "platform": platform},
            )
            raise HTTPException(status_code=503, detail="Queue unavailable, retry later")
        counts[outcome] += 1

    if counts[OUTCOME_ENQUEUED]:
        await notify_workers(counts[OUTCOME_ENQUEUED])

    await log_audit_event(
        db,
        action=AuditAction.WEBHOOK_RECEIVED,
        resource_type="webhook",
        metadata={
            "platform": platform,
            "payload_hash": payload_hash,
            "received": len(events),
            "skipped": skipped,
            **counts,
        },
    )

    logger.info(
        "Webhook accepted: platform=%s received=%d enqueued=%d duplicates=%d dropped=%d skipped=%d",
        platform, len(events), counts[OUTCOME_ENQUEUED], counts[OUTCOME_DUPLICATE],
        counts[OUTCOME_DROPPED], skipped,
    )
    return WebhookReceiptResponse(
        status="accepted",
        received=len(events),
        enqueued=counts[OUTCOME_ENQUEUED],
        duplicates=counts[OUTCOME_DUPLICATE],
        dropped=counts[OUTCOME_DROPPED],
        skipped=skipped,
    )
