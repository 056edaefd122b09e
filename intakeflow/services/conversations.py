"""
Conversation repository - durable per-thread dialogue state and message history.

Collected field values, stored replies and message bodies are encrypted at rest.
Callers own the transaction; nothing here commits.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.models.conversation import ConversationMessage, ConversationState
from intakeflow.utils.encryption import decrypt_value, encrypt_value

logger = logging.getLogger(__name__)

TERMINAL_STEPS = ("completed", "abandoned")


async def load_or_create(
    db: AsyncSession,
    owner_id: uuid.UUID,
    platform: str,
    external_thread_id: str,
    platform_account_id: str,
) -> ConversationState:
    """Load the state for a thread, creating an idle one on first contact."""
    result = await db.execute(
        select(ConversationState).where(
            ConversationState.owner_id == owner_id,
            ConversationState.platform == platform,
            ConversationState.external_thread_id == external_thread_id,
        )
    )
    state = result.scalar_one_or_none()
    if state is not None:
        return state

    state = ConversationState(
        owner_id=owner_id,
        platform=platform,
        external_thread_id=external_thread_id,
        platform_account_id=platform_account_id,
        step="idle",
        cycle=1,
        collected_fields=[],
        slot_options=[],
    )
    db.add(state)
    await db.flush()
    logger.info(
        "Conversation created: %s", str(state.id)[:8],
        extra={"platform": platform, "owner_id": str(owner_id)},
    )
    return state


def reopen(state: ConversationState) -> None:
    """Start a new booking cycle on a terminal conversation."""
    state.cycle = (state.cycle or 1) + 1
    state.step = "idle"
    state.last_intent = None
    state.collected_fields = []
    state.slot_options = []
    state.selected_slot = None
    state.booking_reference = None


def get_fields(state: ConversationState) -> list[tuple[str, str]]:
    """Collected fields in insertion order, decrypted."""
    return [(field, decrypt_value(value)) for field, value in (state.collected_fields or [])]


def get_field(state: ConversationState, field: str) -> Optional[str]:
    for name, value in get_fields(state):
        if name == field:
            return value
    return None


def set_field(state: ConversationState, field: str, value: str) -> None:
    """
    Upsert one collected field. An existing field is replaced in place, so
    repeating a value never creates a duplicate entry.
    """
    encrypted = encrypt_value(value)
    pairs = [list(pair) for pair in (state.collected_fields or [])]
    for pair in pairs:
        if pair[0] == field:
            pair[1] = encrypted
            break
    else:
        pairs.append([field, encrypted])
    # New list object so the JSON column is flagged dirty
    state.collected_fields = pairs


def clear_fields(state: ConversationState) -> None:
    state.collected_fields = []


def get_last_reply(state: ConversationState) -> Optional[str]:
    if not state.last_reply_encrypted:
        return None
    return decrypt_value(state.last_reply_encrypted)


def set_applied_event(state: ConversationState, event_id: str, reply: Optional[str]) -> None:
    """Record the event whose transition this state reflects, with the reply it produced."""
    state.last_event_id = event_id
    state.last_reply_encrypted = encrypt_value(reply) if reply else None


async def record_message(
    db: AsyncSession,
    state: ConversationState,
    direction: str,
    text: str,
    platform_message_id: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Optional[ConversationMessage]:
    """Append a message to the thread history. Inbound messages are stored once per platform id."""
    if platform_message_id:
        existing = await db.execute(
            select(ConversationMessage.id).where(
                ConversationMessage.conversation_id == state.id,
                ConversationMessage.platform_message_id == platform_message_id,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return None

    message = ConversationMessage(
        conversation_id=state.id,
        direction=direction,
        content_encrypted=encrypt_value(text),
        platform_message_id=platform_message_id,
        event_id=event_id,
    )
    db.add(message)
    await db.flush()
    return message


async def recent_messages(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    limit: int,
) -> list[dict]:
    """
    The last `limit` messages, most recent first, decrypted:
    [{"direction": "inbound", "text": "..."}, ...]
    """
    query = (
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.created_at.desc())
        .limit(limit)
    )
    result = await db.execute(query)
    return [
        {"direction": m.direction, "text": decrypt_value(m.content_encrypted)}
        for m in result.scalars().all()
    ]
