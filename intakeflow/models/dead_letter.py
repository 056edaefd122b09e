"""
Dead-letter entry - an event that exhausted its attempts or was permanently rejected.
Payload is Fernet-encrypted, or withheld when no key was configured. Rows are
append-only apart from the replay fields.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from intakeflow.database import Base


class DeadLetterEntry(Base):
    __tablename__ = "dead_letter_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), nullable=False, index=True)
    platform = Column(String(30), nullable=False, index=True)
    platform_account_id = Column(String(100), nullable=False)
    conversation_key = Column(String(400), nullable=False)
    payload_encrypted = Column(Text, nullable=True)  # NULL when stored without a key
    last_error = Column(Text, nullable=False)
    error_history = Column(JSONB, nullable=False, default=list)
    attempts = Column(Integer, nullable=False, default=0)
    correlation_id = Column(String(64), nullable=True, index=True)
    stored_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    status = Column(
        String(20), nullable=False, default="pending_review", server_default="pending_review", index=True
    )  # pending_review, replayed
    replayed_at = Column(DateTime(timezone=True), nullable=True)
    replayed_by = Column(String(100), nullable=True)
