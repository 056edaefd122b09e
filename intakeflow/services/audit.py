"""
Audit logger - append-only records of pipeline and security events.

Metadata must hold key facts only (ids, counts, steps, categories). Keys that
could carry personal data are stripped before the row is written.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.models.audit_log import AuditLog
from intakeflow.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


class AuditAction:
    """Audit action constants."""
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_SIGNATURE_FAILED = "webhook_signature_failed"
    WEBHOOK_PAYLOAD_INVALID = "webhook_payload_invalid"
    WEBHOOK_ATTEMPT_FAILED = "webhook_attempt_failed"
    TENANT_RESOLUTION = "tenant_resolution"
    CONSENT_RECORDED = "consent_recorded"
    DEAD_LETTER_STORED = "dead_letter_stored"
    DEAD_LETTER_ACCESSED = "dead_letter_accessed"
    DEAD_LETTER_REPLAYED = "dead_letter_replayed"


# Metadata keys that may identify a person or carry message content
PHI_METADATA_KEYS = frozenset({
    "name",
    "patient_name",
    "phone",
    "phone_number",
    "email",
    "date_of_birth",
    "dob",
    "address",
    "text",
    "content",
    "message",
    "message_text",
    "reply",
    "reason",
    "collected_fields",
    "payload",
})


def sanitize_metadata(metadata: Optional[dict]) -> dict:
    """Drop sensitive keys (case-insensitive) from audit metadata."""
    if not metadata:
        return {}
    clean = {}
    dropped = []
    for key, value in metadata.items():
        if str(key).lower() in PHI_METADATA_KEYS:
            dropped.append(key)
            continue
        clean[key] = value
    if dropped:
        logger.warning("Dropped sensitive audit metadata keys: %s", ",".join(sorted(dropped)))
    return clean


async def log_audit_event(
    db: AsyncSession,
    action: str,
    resource_type: str,
    status: str = "success",
    resource_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    error_summary: Optional[str] = None,
    metadata: Optional[dict] = None,
    correlation_id: Optional[str] = None,
) -> AuditLog:
    """
    Append an audit record to the current session (flushed, not committed).
    The caller owns the transaction so the record commits with the change it describes.
    """
    entry = AuditLog(
        correlation_id=correlation_id or get_correlation_id(),
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        status=status,
        error_summary=error_summary[:1000] if error_summary else None,
        extra_data=sanitize_metadata(metadata),
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "Audit: action=%s resource=%s:%s status=%s",
        action, resource_type, resource_id, status,
    )
    return entry

