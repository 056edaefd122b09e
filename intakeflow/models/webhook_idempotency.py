"""
Webhook idempotency record - one row per inbound event id.
pending -> processed | failed. A processed or failed event is never enqueued again.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text
from intakeflow.database import Base


class WebhookIdempotency(Base):
    __tablename__ = "webhook_idempotency"

    event_id = Column(String(255), primary_key=True)
    platform = Column(String(30), nullable=False, index=True)
    status = Column(
        String(20), nullable=False, default="pending", server_default="pending", index=True
    )  # pending, processed, failed
    payload_hash = Column(String(64), nullable=True)
    correlation_id = Column(String(64), nullable=True)
    error_summary = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
