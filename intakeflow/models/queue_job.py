"""
Durable job queue row - one per accepted inbound event.
Jobs sharing a conversation_key are delivered strictly in sequence order.
The row is deleted on ack and replaced by a dead-letter entry on exhaustion.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import BigInteger, Integer, String, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from intakeflow.database import Base


class QueueJob(Base):
    __tablename__ = "queue_jobs"

    # Monotonic enqueue order; defines per-conversation ordering
    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False
    )
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    conversation_key: Mapped[str] = mapped_column(String(400), nullable=False)
    platform: Mapped[str] = mapped_column(String(30), nullable=False)

    # Serialised InboundEvent (Fernet-encrypted when ENCRYPTION_KEY is set)
    payload_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    visible_after: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    leased_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lease_owner: Mapped[Optional[str]] = mapped_column(String(100))

    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_history: Mapped[list] = mapped_column(JSONB, default=list)

    __table_args__ = (
        Index("ix_queue_jobs_conversation_key_sequence", "conversation_key", "sequence"),
        Index("ix_queue_jobs_visible_after", "visible_after"),
    )
