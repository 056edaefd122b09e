"""
Conductor - state machine for one inbound message in a conversation.

Loads the durable conversation state, decides what the message means (pattern match
for the expected input, intent classifier otherwise), applies one transition and
returns the reply to send. The caller commits the state BEFORE sending, so a
redelivered event finds its own id in `last_event_id` and re-sends the stored reply
instead of applying the transition twice.

State machine:
  idle -> collecting_fields | checking_availability | abandoned
  collecting_fields -> collecting_fields (next field) | awaiting_consent
                       | checking_availability | awaiting_confirmation (consent already granted)
  awaiting_consent -> checking_availability | awaiting_confirmation (granted) | abandoned (denied)
  checking_availability -> awaiting_confirmation | collecting_fields (slot chosen first) | awaiting_consent
  awaiting_confirmation -> completed | checking_availability (conflict or declined)
                           | awaiting_consent (consent withdrawn meanwhile)
  Any active step -> abandoned (cancel / revoke consent)
  completed, abandoned: terminal; the next message opens a new cycle from idle

classifying_intent and responding are transient phases: they are reported in the
turn result and audit metadata but never persisted as a step.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from intakeflow.agents import book as book_agent
from intakeflow.agents import collect
from intakeflow.agents import consent
from intakeflow.models.conversation import ConversationMessage, ConversationState
from intakeflow.schemas.inbound_event import InboundEvent
from intakeflow.schemas.intents import Intent, IntentResult
from intakeflow.services import conversations
from intakeflow.services.audit import AuditAction, log_audit_event
from intakeflow.services.booking import (
    BookingAdapter,
    Slot,
    booking_idempotency_key,
    commit as commit_booking,
    fetch_slots,
)
from intakeflow.services.classifier import classify_intent, generate_reply
from intakeflow.services.tenants import TenantContext
from intakeflow.utils.errors import BookingConflictError

logger = logging.getLogger(__name__)

STEP_IDLE = "idle"
STEP_COLLECTING = "collecting_fields"
STEP_CONSENT = "awaiting_consent"
STEP_CHECKING = "checking_availability"
STEP_CONFIRMING = "awaiting_confirmation"
STEP_COMPLETED = "completed"
STEP_ABANDONED = "abandoned"

PHASE_CLASSIFYING = "classifying_intent"
PHASE_RESPONDING = "responding"

# Valid state transitions (an unchanged step is not a transition)
VALID_TRANSITIONS = {
    STEP_IDLE: [STEP_COLLECTING, STEP_CHECKING, STEP_ABANDONED],
    STEP_COLLECTING: [STEP_COLLECTING, STEP_CONSENT, STEP_CHECKING, STEP_CONFIRMING, STEP_ABANDONED],
    STEP_CONSENT: [STEP_CHECKING, STEP_CONFIRMING, STEP_ABANDONED],
    STEP_CHECKING: [STEP_COLLECTING, STEP_CONSENT, STEP_CONFIRMING, STEP_ABANDONED],
    STEP_CONFIRMING: [STEP_CHECKING, STEP_CONSENT, STEP_COMPLETED, STEP_ABANDONED],
    STEP_COMPLETED: [],  # Terminal - next message starts a new cycle
    STEP_ABANDONED: [],  # Terminal - next message starts a new cycle
}

CLARIFY_MESSAGE = (
    "Sorry, I didn't quite catch that. I can help you book an appointment "
    "or check available times. What would you like to do?"
)
CANCELLED_MESSAGE = "No problem, I've cancelled this booking request. Message us anytime if you'd like to book."
REVOKED_MESSAGE = "Understood. We've deleted the details you shared in this conversation and won't use them."


class InvalidTransitionError(Exception):
    """A handler tried to move the conversation along an edge not in VALID_TRANSITIONS."""


class TurnResult:
    """Outcome of applying one inbound message."""

    def __init__(
        self,
        reply: Optional[str],
        step: str,
        previous_step: str,
        conversation_id=None,
        intent: Optional[str] = None,
        confidence: Optional[float] = None,
        redacted: bool = False,
        phases: Optional[list[str]] = None,
        resent: bool = False,
        booking_reference: Optional[str] = None,
        booked_slot: Optional[Slot] = None,
    ):
        self.reply = reply
        self.step = step
        self.previous_step = previous_step
        self.conversation_id = conversation_id
        self.intent = intent
        self.confidence = confidence
        self.redacted = redacted
        self.phases = phases or []
        self.resent = resent
        self.booking_reference = booking_reference
        self.booked_slot = booked_slot

    @property
    def booked(self) -> bool:
        """True only for the turn that completed a booking, not for a re-send."""
        return self.booked_slot is not None and not self.resent

    def audit_metadata(self) -> dict:
        """Key facts only - never reply text or collected values."""
        return {
            "step_from": self.previous_step,
            "step_to": self.step,
            "intent": self.intent,
            "confidence": self.confidence,
            "redacted": self.redacted,
            "phases": self.phases,
            "resent": self.resent,
            "booked": self.booked,
        }


class _Turn:
    """Working context for one message."""

    def __init__(
        self,
        db: AsyncSession,
        state: ConversationState,
        tenant: TenantContext,
        event: InboundEvent,
        booking: BookingAdapter,
    ):
        from intakeflow.config import get_settings
        self.db = db
        self.state = state
        self.tenant = tenant
        self.event = event
        self.booking = booking
        self.settings = get_settings()
        self.text = (event.text or "").strip()
        self.intent: Optional[IntentResult] = None
        self.phases: list[str] = []
        self.erase_history = False

    @property
    def fields(self) -> dict:
        return dict(conversations.get_fields(self.state))

    @property
    def tz(self) -> str:
        return self.tenant.timezone or "UTC"


def _transition(state: ConversationState, new_step: str) -> None:
    if new_step == state.step:
        return
    allowed = VALID_TRANSITIONS.get(state.step, [])
    if new_step not in allowed:
        raise InvalidTransitionError(f"Invalid transition {state.step} -> {new_step}")
    state.step = new_step


async def advance_conversation(
    db: AsyncSession,
    tenant: TenantContext,
    event: InboundEvent,
    booking: BookingAdapter,
) -> TurnResult:
    """
    Apply one inbound event to its conversation and return the reply to send.

    Persists (flushes) the new state with last_event_id/last_reply; the caller commits.
    Classifier and booking errors propagate before anything is flushed.
    """
    state = await conversations.load_or_create(
        db, tenant.owner_id, event.platform, event.sender_external_id, event.platform_account_id,
    )

    # Already applied (crash or failed send after commit): re-send, don't re-apply
    if state.last_event_id == event.event_id:
        logger.info(
            "Event already applied to conversation %s, re-sending stored reply", str(state.id)[:8],
            extra={"event_id": event.event_id, "step": state.step},
        )
        return TurnResult(
            reply=conversations.get_last_reply(state),
            step=state.step,
            previous_step=state.step,
            conversation_id=state.id,
            intent=state.last_intent,
            resent=True,
            booking_reference=state.booking_reference,
        )

    if state.step in conversations.TERMINAL_STEPS:
        conversations.reopen(state)

    turn = _Turn(db, state, tenant, event, booking)
    previous_step = state.step

    handler = _STEP_HANDLERS[state.step]
    reply, new_step = await handler(turn)
    _transition(state, new_step)

    if turn.intent is not None:
        state.last_intent = turn.intent.intent
    conversations.set_applied_event(state, event.event_id, reply)

    if turn.erase_history:
        await db.execute(
            delete(ConversationMessage)
            .where(ConversationMessage.conversation_id == state.id)
            .execution_options(synchronize_session=False)
        )
    else:
        await conversations.record_message(
            db, state, "inbound", turn.text, platform_message_id=event.event_id, event_id=event.event_id,
        )
        if reply:
            await conversations.record_message(db, state, "outbound", reply, event_id=event.event_id)
    await db.flush()

    if not turn.phases or turn.phases[-1] != PHASE_RESPONDING:
        turn.phases.append(PHASE_RESPONDING)

    booked_slot = _selected_slot(turn) if state.step == STEP_COMPLETED else None

    logger.info(
        "Conversation %s advanced %s -> %s", str(state.id)[:8], previous_step, state.step,
        extra={"event_id": event.event_id, "step": state.step},
    )
    return TurnResult(
        reply=reply,
        step=state.step,
        previous_step=previous_step,
        conversation_id=state.id,
        intent=turn.intent.intent if turn.intent else None,
        confidence=turn.intent.confidence if turn.intent else None,
        redacted=turn.intent.redacted if turn.intent else False,
        phases=turn.phases,
        booking_reference=state.booking_reference,
        booked_slot=booked_slot,
    )


# ----- Classification -----

async def _classify(turn: _Turn) -> IntentResult:
    turn.phases.append(PHASE_CLASSIFYING)
    history = await conversations.recent_messages(
        turn.db, turn.state.id, turn.settings.classifier_history_window,
    )
    turn.intent = await classify_intent(
        turn.text,
        history=history,
        known_values=list(turn.fields.values()),
    )
    return turn.intent


def _is_confident(turn: _Turn, intent: IntentResult) -> bool:
    return intent.intent != Intent.UNKNOWN and intent.confidence >= turn.settings.classifier_min_confidence


async def _dispatch_intent(turn: _Turn, intent: IntentResult, clarify: str) -> tuple[str, str]:
    """
    Route a classified message. `clarify` is the step-specific prompt used when
    the intent is unknown, low confidence, or a booking request we are already handling.
    """
    step = turn.state.step

    if not _is_confident(turn, intent):
        return clarify, step

    if intent.intent == Intent.CANCEL:
        return _cancel(turn)
    if intent.intent == Intent.REVOKE_CONSENT:
        return await _revoke(turn)

    if intent.intent in (Intent.ASK_QUESTION, Intent.GREETING):
        history = await conversations.recent_messages(
            turn.db, turn.state.id, turn.settings.classifier_history_window,
        )
        answer = await generate_reply(
            turn.text, history=history, intent=intent.intent, known_values=list(turn.fields.values()),
        )
        if step != STEP_IDLE:
            answer = f"{answer}\n\n{clarify}"
        return answer, step

    if intent.intent == Intent.CHECK_AVAILABILITY:
        if step == STEP_CONFIRMING:
            turn.state.selected_slot = None
        return await _present_slots(turn)

    # book_appointment
    if step == STEP_IDLE:
        return await _next_booking_step(turn)
    return clarify, step


def _cancel(turn: _Turn) -> tuple[str, str]:
    turn.state.selected_slot = None
    turn.state.slot_options = []
    return CANCELLED_MESSAGE, STEP_ABANDONED


async def _revoke(turn: _Turn) -> tuple[str, str]:
    turn.state.selected_slot = None
    turn.state.slot_options = []
    conversations.clear_fields(turn.state)
    turn.erase_history = True
    await _record_consent(turn, consent.CONSENT_REVOKED)
    logger.info("Consent revoked, collected values erased for conversation %s", str(turn.state.id)[:8])
    return REVOKED_MESSAGE, STEP_ABANDONED


async def _record_consent(turn: _Turn, status: str) -> None:
    """Persist the consent decision and audit it in the same transaction."""
    turn.state.consent_status = status
    turn.state.consent_updated_at = datetime.now(timezone.utc)
    await log_audit_event(
        turn.db,
        action=AuditAction.CONSENT_RECORDED,
        resource_type="conversation",
        resource_id=str(turn.state.id),
        metadata={"consent_status": status, "event_id": turn.event.event_id, "cycle": turn.state.cycle},
        correlation_id=turn.event.correlation_id,
    )


# ----- Booking flow helpers -----

async def _present_slots(turn: _Turn, prefix: str = "") -> tuple[str, str]:
    slots = await fetch_slots(turn.booking, turn.tenant.owner_id, turn.tz)
    options = slots[: turn.settings.booking_max_slots_offered]
    turn.state.slot_options = [s.to_dict() for s in options]
    if not options:
        return prefix + book_agent.no_slots_message(turn.settings.booking_lookahead_days), STEP_CHECKING
    return book_agent.format_slot_list(options, turn.tz, prefix=prefix), STEP_CHECKING


def _selected_slot(turn: _Turn) -> Optional[Slot]:
    if not turn.state.selected_slot:
        return None
    return Slot.from_dict(turn.state.selected_slot)


async def _next_booking_step(turn: _Turn, prefix: str = "") -> tuple[str, str]:
    """Ask for the next missing field, for consent, present slots, or ask for confirmation."""
    missing = collect.next_missing_field(turn.fields)
    if missing:
        return prefix + collect.field_prompt(missing), STEP_COLLECTING

    if turn.state.consent_status != consent.CONSENT_GRANTED:
        return prefix + consent.CONSENT_PROMPT, STEP_CONSENT

    slot = _selected_slot(turn)
    if slot is not None:
        return prefix + book_agent.confirmation_prompt(slot, turn.tz), STEP_CONFIRMING

    return await _present_slots(turn, prefix=prefix)


def _options(turn: _Turn) -> list[Slot]:
    return [Slot.from_dict(o) for o in (turn.state.slot_options or [])]


# ----- Step handlers -----

async def _handle_idle(turn: _Turn) -> tuple[str, str]:
    intent = await _classify(turn)
    return await _dispatch_intent(turn, intent, CLARIFY_MESSAGE)


async def _handle_collecting(turn: _Turn) -> tuple[str, str]:
    expected = collect.next_missing_field(turn.fields)
    parsed = collect.parse_field_message(turn.text, expected)

    if parsed is not None and not parsed[2] and collect.looks_like_cancel(turn.text):
        # "I can't stop coughing" is a reason, "stop" is not; the classifier decides
        intent = await _classify(turn)
        if _is_confident(turn, intent) and intent.intent in (Intent.CANCEL, Intent.REVOKE_CONSENT):
            return await _dispatch_intent(turn, intent, collect.field_prompt(expected))

    error = ""
    if parsed is not None:
        field, raw_value, explicit = parsed
        ok, value = collect.validate_field(field, raw_value)
        if ok:
            conversations.set_field(turn.state, field, value)
            return await _next_booking_step(turn)
        error = value + " "
        if explicit:
            # User named the field; re-prompt without asking the classifier
            return error + collect.field_prompt(field), STEP_COLLECTING

    intent = turn.intent or await _classify(turn)
    return await _dispatch_intent(turn, intent, error + collect.field_prompt(expected))


async def _handle_consent(turn: _Turn) -> tuple[str, str]:
    answer = consent.parse_consent_reply(turn.text)

    if answer == consent.CONSENT_GRANTED:
        await _record_consent(turn, consent.CONSENT_GRANTED)
        return await _next_booking_step(turn, prefix="Thank you. ")

    if answer == consent.CONSENT_DENIED:
        turn.state.selected_slot = None
        turn.state.slot_options = []
        conversations.clear_fields(turn.state)
        turn.erase_history = True
        await _record_consent(turn, consent.CONSENT_DENIED)
        logger.info("Consent denied, collected values erased for conversation %s", str(turn.state.id)[:8])
        return consent.CONSENT_DENIED_MESSAGE, STEP_ABANDONED

    intent = await _classify(turn)
    return await _dispatch_intent(turn, intent, consent.CONSENT_PROMPT)


async def _handle_checking(turn: _Turn) -> tuple[str, str]:
    options = _options(turn)
    if not collect.looks_like_cancel(turn.text):
        choice = book_agent.parse_slot_choice(turn.text, len(options))
        if choice is not None:
            slot = options[choice]
            turn.state.selected_slot = slot.to_dict()
            return await _next_booking_step(turn, prefix=f"Great, {slot.to_display(turn.tz)} it is. ")

        if book_agent.is_number_reply(turn.text) and options:
            return f"Please reply with a number between 1 and {len(options)}.", STEP_CHECKING

    if options:
        clarify = book_agent.format_slot_list(options, turn.tz)
    else:
        clarify = CLARIFY_MESSAGE
    intent = await _classify(turn)
    return await _dispatch_intent(turn, intent, clarify)


async def _handle_confirming(turn: _Turn) -> tuple[str, str]:
    slot = _selected_slot(turn)
    answer = None if collect.looks_like_cancel(turn.text) else book_agent.parse_yes_no(turn.text)

    if slot is None:
        # Lost the selection somehow; start the slot choice again
        return await _present_slots(turn)

    if answer == "yes":
        return await _confirm_booking(turn, slot)

    if answer == "no":
        turn.state.selected_slot = None
        return await _present_slots(turn, prefix="No problem. ")

    intent = await _classify(turn)
    return await _dispatch_intent(turn, intent, book_agent.confirmation_prompt(slot, turn.tz))


async def _confirm_booking(turn: _Turn, slot: Slot) -> tuple[str, str]:
    fields = turn.fields
    if collect.next_missing_field(fields):
        # Guarded by VALID_TRANSITIONS: confirming -> collecting is not an edge
        turn.state.selected_slot = None
        return await _present_slots(turn)

    if turn.state.consent_status != consent.CONSENT_GRANTED:
        return consent.CONSENT_PROMPT, STEP_CONSENT

    state = turn.state
    key = booking_idempotency_key(
        turn.tenant.owner_id, state.platform, state.external_thread_id, state.cycle or 1, slot,
    )
    try:
        confirmation = await commit_booking(
            turn.booking,
            turn.tenant.owner_id,
            slot,
            key,
            {
                "name": fields.get("name"),
                "phone": fields.get("phone"),
                "reason": fields.get("reason"),
                "conversation_id": str(state.id),
            },
        )
    except BookingConflictError:
        logger.info("Booking conflict for conversation %s, re-offering slots", str(state.id)[:8])
        state.selected_slot = None
        return await _present_slots(turn, prefix="That slot was just taken. ")

    state.booking_reference = confirmation.reference
    state.slot_options = []
    return book_agent.booked_message(slot, confirmation.reference, turn.tz), STEP_COMPLETED


_STEP_HANDLERS = {
    STEP_IDLE: _handle_idle,
    STEP_COLLECTING: _handle_collecting,
    STEP_CONSENT: _handle_consent,
    STEP_CHECKING: _handle_checking,
    STEP_CONFIRMING: _handle_confirming,
}
