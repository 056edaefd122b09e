"""
Platform account linkage - maps a messaging platform account id (page / IG business id)
to the owning business. Inbound events for unlinked accounts are dropped.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from intakeflow.database import Base


class PlatformAccount(Base):
    __tablename__ = "platform_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(30), nullable=False)  # instagram, messenger
    platform_account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(200))

    # Page access token for the send API (Fernet-encrypted)
    access_token_encrypted: Mapped[Optional[str]] = mapped_column(Text)

    # Owner endpoint that receives a PHI-free notice for each new booking
    notification_webhook_url: Mapped[Optional[str]] = mapped_column(Text)

    # IANA timezone the owner's availability windows are expressed in
    timezone: Mapped[str] = mapped_column(String(50), default="UTC", server_default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("platform", "platform_account_id", name="uq_platform_accounts_platform_account"),
    )
