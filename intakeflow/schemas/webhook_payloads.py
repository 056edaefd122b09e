"""
Webhook payload schemas - raw Graph-style messaging envelopes.
The receiver validates the envelope, then flattens it into InboundEvents.
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, Field, ValidationError
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.utils.errors import PayloadValidationError

logger = logging.getLogger(__name__)

# Fallback event ids bucket the timestamp so redeliveries hash identically
FALLBACK_BUCKET_MS = 300_000


class Participant(BaseModel):
    id: str


class MessageBody(BaseModel):
    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False


class MessagingItem(BaseModel):
    """One entry in entry[].messaging[]. Reads, reactions and postbacks have no `message`."""
    sender: Participant
    recipient: Participant
    timestamp: Optional[int] = None
    message: Optional[MessageBody] = None


class WebhookEntry(BaseModel):
    id: str  # receiving page / business account id
    time: Optional[int] = None
    messaging: list[MessagingItem] = Field(default_factory=list)


class WebhookEnvelope(BaseModel):
    object: str
    entry: list[WebhookEntry] = Field(default_factory=list)


def parse_envelope(data) -> WebhookEnvelope:
    """Validate a decoded JSON body. Raises PayloadValidationError on a malformed shape."""
    if not isinstance(data, dict):
        raise PayloadValidationError("Webhook body is not a JSON object")
    try:
        return WebhookEnvelope.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(f"Webhook envelope invalid ({e.error_count()} errors)") from e


def fallback_event_id(
    platform: str,
    account_id: str,
    sender_id: str,
    timestamp_ms: Optional[int],
    text: str,
) -> str:
    """Deterministic id for message entries that carry no platform message id."""
    bucket = (timestamp_ms or 0) // FALLBACK_BUCKET_MS
    raw = f"{platform}|{account_id}|{sender_id}|{bucket}|{text.strip().lower()}"
    return "fallback_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


def extract_inbound_events(
    platform: str,
    envelope: WebhookEnvelope,
    correlation_id: Optional[str] = None,
) -> tuple[list[InboundEvent], int]:
    """
    Flatten a (possibly batched) envelope into one InboundEvent per text message.

    Echoes of our own sends, read receipts and non-text entries are skipped.
    Event id is the platform message id.

    Returns:
        (events, skipped_count)
    """
    events: list[InboundEvent] = []
    skipped = 0
    seen: set[str] = set()

    for entry in envelope.entry:
        for item in entry.messaging:
            message = item.message
            if message is None or message.is_echo or not (message.text or "").strip():
                skipped += 1
                continue

            received_at = datetime.now(timezone.utc)
            if item.timestamp:
                received_at = datetime.fromtimestamp(item.timestamp / 1000, tz=timezone.utc)

            event_id = message.mid or fallback_event_id(
                platform, entry.id, item.sender.id, item.timestamp, message.text
            )
            # The same message may appear twice within one batch
            if event_id in seen:
                skipped += 1
                continue
            seen.add(event_id)

            events.append(InboundEvent(
                event_id=event_id,
                platform=platform,
                platform_account_id=entry.id,
                sender_external_id=item.sender.id,
                received_at=received_at,
                text=message.text,
                correlation_id=correlation_id,
            ))

    logger.debug("Extracted %d events (%d skipped) from %s webhook", len(events), skipped, platform)
    return events, skipped
