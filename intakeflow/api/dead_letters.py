"""
Admin API - dead-letter review and replay.
Guarded by the X-Admin-Key header. Reading a payload and replaying are audited.
"""
import hashlib
import hmac
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.database import get_db
from intakeflow.models.dead_letter import DeadLetterEntry
from intakeflow.schemas.api_responses import (
    DeadLetterDetail,
    DeadLetterListResponse,
    DeadLetterSummary,
    ReplayResponse,
)
from intakeflow.services.dead_letter import (
    ReplayNotAllowedError,
    get_dead_letter,
    list_dead_letters,
    read_dead_letter_payload,
    replay_dead_letter,
)
from intakeflow.services.job_queue import notify_workers

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin/dead-letters", tags=["admin"])


async def require_admin_key(x_admin_key: str = Header(default="")) -> str:
    """Validate the admin key. Returns an actor id derived from the key (never the key)."""
    from intakeflow.config import get_settings
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("Rejected admin request with invalid key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return "admin:" + hashlib.sha256(x_admin_key.encode()).hexdigest()[:8]


def _parse_id(entry_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(entry_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Dead letter not found")


def _summary(entry: DeadLetterEntry) -> dict:
    return {
        "id": str(entry.id),
        "event_id": entry.event_id,
        "platform": entry.platform,
        "platform_account_id": entry.platform_account_id,
        "status": entry.status,
        "attempts": entry.attempts,
        "last_error": entry.last_error,
        "correlation_id": entry.correlation_id,
        "stored_at": entry.stored_at,
        "replayed_at": entry.replayed_at,
    }


@router.get("", response_model=DeadLetterListResponse)
async def list_entries(
    status: Optional[str] = Query(default="pending_review"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor_id: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    """Dead letters for review (payloads stay encrypted)."""
    entries = await list_dead_letters(db, status=status or None, limit=limit, offset=offset)
    return DeadLetterListResponse(
        entries=[DeadLetterSummary(**_summary(e)) for e in entries],
        count=len(entries),
    )


@router.get("/{entry_id}", response_model=DeadLetterDetail)
async def get_entry(
    entry_id: str,
    actor_id: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    """One dead letter with its decrypted payload. The read is audited."""
    entry = await get_dead_letter(db, _parse_id(entry_id))
    if entry is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")

    event = await read_dead_letter_payload(db, entry, actor_id=actor_id)
    await db.commit()
    return DeadLetterDetail(
        **_summary(entry),
        error_history=list(entry.error_history or []),
        payload=event.model_dump(mode="json") if event is not None else {},
        payload_withheld=event is None,
    )


@router.post("/{entry_id}/replay", response_model=ReplayResponse)
async def replay_entry(
    entry_id: str,
    actor_id: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_db),
):
    """Re-enqueue a dead-lettered event as a fresh job."""
    try:
        job = await replay_dead_letter(db, _parse_id(entry_id), actor_id=actor_id)
    except ReplayNotAllowedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")

    await db.commit()
    await notify_workers()
    return ReplayResponse(status="replayed", dead_letter_id=entry_id, job_id=str(job.job_id))
