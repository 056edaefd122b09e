"""
Book Agent - slot presentation, slot selection and booking confirmation replies.
"""
import re
from typing import Optional

from intakeflow.services.booking import Slot

_CHOICE = re.compile(r"^\s*(?:#|no\.?|number|option|slot)?\s*(\d{1,2})\s*[.)!]?\s*$", re.IGNORECASE)
_YES = re.compile(
    r"^\s*(yes|y|yeah|yep|yup|sure|ok|okay|confirm|confirmed|correct|sounds good|"
    r"that works|perfect|please do|book it)\b",
    re.IGNORECASE,
)
_NO = re.compile(
    r"^\s*(no|n|nope|nah|not that|change|different|another|other time|something else)\b",
    re.IGNORECASE,
)


def format_slot_list(slots: list[Slot], tz_name: str = "UTC", prefix: str = "") -> str:
    """Numbered list of slots with booking instructions."""
    lines = [f"{prefix}Here are the next available times:"]
    for i, slot in enumerate(slots, start=1):
        lines.append(f"{i}. {slot.to_display(tz_name)}")
    lines.append("Reply with the number (1, 2, 3...) to book.")
    return "\n".join(lines)


def no_slots_message(days: int) -> str:
    return f"Sorry, there are no open appointments in the next {days} days. Please check back soon."


def parse_slot_choice(text: str, option_count: int) -> Optional[int]:
    """Zero-based index of the chosen slot, or None when the text is not a valid choice."""
    match = _CHOICE.match(text or "")
    if not match:
        return None
    number = int(match.group(1))
    if 1 <= number <= option_count:
        return number - 1
    return None


def is_number_reply(text: str) -> bool:
    return bool(_CHOICE.match(text or ""))


def parse_yes_no(text: str) -> Optional[str]:
    """'yes', 'no' or None."""
    if _YES.match(text or ""):
        return "yes"
    if _NO.match(text or ""):
        return "no"
    return None


def confirmation_prompt(slot: Slot, tz_name: str = "UTC") -> str:
    return (
        f"Please confirm your appointment on {slot.to_display(tz_name)}. "
        "Reply YES to confirm or NO to choose a different time."
    )


def booked_message(slot: Slot, reference: str, tz_name: str = "UTC") -> str:
    return f"You're booked for {slot.to_display(tz_name)}. Your reference is {reference}. See you then!"
