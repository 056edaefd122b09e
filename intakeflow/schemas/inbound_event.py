"""
InboundEvent - the normalised, immutable unit of work carried through the queue.
`text` is the raw message; it lives only inside the (encrypted) job and dead-letter
payloads and must never be logged.
"""
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class InboundEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1, max_length=255)
    platform: str = Field(..., min_length=1, max_length=30)
    platform_account_id: str = Field(..., min_length=1, max_length=100)
    sender_external_id: str = Field(..., min_length=1, max_length=255)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    text: str = ""
    correlation_id: Optional[str] = None

    @property
    def conversation_key(self) -> str:
        """Ordering key: events for the same thread are processed one at a time, in order."""
        return f"{self.platform}:{self.platform_account_id}:{self.sender_external_id}"
