"""
Conversation models.
ConversationState - durable dialogue state, one row per (owner, platform, thread).
ConversationMessage - inbound/outbound message history used as classifier context.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from intakeflow.database import Base


class ConversationState(Base):
    __tablename__ = "conversation_states"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    platform: Mapped[str] = mapped_column(String(30), nullable=False)
    external_thread_id: Mapped[str] = mapped_column(String(255), nullable=False)
    platform_account_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Dialogue position
    step: Mapped[str] = mapped_column(
        String(30), default="idle", server_default="idle"
    )  # idle, collecting_fields, awaiting_consent, checking_availability, awaiting_confirmation, completed, abandoned
    last_intent: Mapped[Optional[str]] = mapped_column(String(30))
    cycle: Mapped[int] = mapped_column(Integer, default=1)

    # Ordered [[field, encrypted_value], ...] pairs
    collected_fields: Mapped[list] = mapped_column(JSONB, default=list)

    # Slots presented in the last availability reply: [{"start": iso, "end": iso}, ...]
    slot_options: Mapped[list] = mapped_column(JSONB, default=list)
    selected_slot: Mapped[Optional[dict]] = mapped_column(JSONB)
    booking_reference: Mapped[Optional[str]] = mapped_column(String(64))

    # Consent to store collected details: granted, denied, revoked. Survives new cycles.
    consent_status: Mapped[Optional[str]] = mapped_column(String(20))
    consent_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Redelivery guard: the last applied event and the reply it produced (encrypted)
    last_event_id: Mapped[Optional[str]] = mapped_column(String(255))
    last_reply_encrypted: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    messages: Mapped[list["ConversationMessage"]] = relationship(
        back_populates="conversation", lazy="noload"
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "platform", "external_thread_id", name="uq_conversation_states_thread"
        ),
        Index("ix_conversation_states_step", "step"),
    )


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversation_states.id"), nullable=False
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound, outbound
    content_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    # Platform message id for inbound messages; outbound rows reference the triggering event
    platform_message_id: Mapped[Optional[str]] = mapped_column(String(255))
    event_id: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    conversation: Mapped["ConversationState"] = relationship(back_populates="messages")

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "platform_message_id", name="uq_conversation_messages_platform_id"
        ),
        Index("ix_conversation_messages_conversation_created", "conversation_id", "created_at"),
    )
