"""
API response schemas for the webhook receiver and admin endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class WebhookReceiptResponse(BaseModel):
    status: str  # accepted, ignored
    received: int = 0
    enqueued: int = 0
    duplicates: int = 0
    dropped: int = 0
    skipped: int = 0
    message: Optional[str] = None


class DeadLetterSummary(BaseModel):
    id: str
    event_id: str
    platform: str
    platform_account_id: str
    status: str
    attempts: int
    last_error: str
    correlation_id: Optional[str] = None
    stored_at: datetime
    replayed_at: Optional[datetime] = None


class DeadLetterListResponse(BaseModel):
    entries: list[DeadLetterSummary]
    count: int


class DeadLetterDetail(DeadLetterSummary):
    error_history: list[dict[str, Any]] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict, description="Decrypted inbound event")
    payload_withheld: bool = Field(default=False, description="Stored without a payload (no encryption key at the time)")


class ReplayResponse(BaseModel):
    status: str
    dead_letter_id: str
    job_id: str
