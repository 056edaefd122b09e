"""
Collect Agent - gathers the details needed for a booking: name, phone, reason.
Rule-based and deterministic: no AI call is made for a message that looks like a field value.
"""
import re
from typing import Optional

REQUIRED_FIELDS = ("name", "phone", "reason")

FIELD_PROMPTS = {
    "name": "What's your full name?",
    "phone": "What's the best phone number to reach you?",
    "reason": "Briefly, what's the reason for your visit?",
}

# Prefixes that name a field explicitly; they win over the field we were waiting for
_EXPLICIT_PATTERNS = (
    ("name", re.compile(r"\b(?:my name is|my name's|name is|name:)\s*(.+)$", re.IGNORECASE)),
    ("phone", re.compile(
        r"\b(?:my (?:phone|cell|mobile)(?: number)? is|my number is|phone(?: number)?(?: is|:)|"
        r"number:|call me (?:at|on))\s*(.+)$",
        re.IGNORECASE,
    )),
    ("reason", re.compile(
        r"\b(?:the reason is|reason(?: for (?:my |the )?visit)?(?: is|:)|"
        r"i'?m coming (?:in )?(?:for|about)|visit is (?:for|about))\s*(.+)$",
        re.IGNORECASE,
    )),
)

# Self-introductions only count as a name while we are asking for one
_NAME_INTRO = re.compile(r"^\s*(?:i'?m|i am|this is|it'?s)\s+(.+)$", re.IGNORECASE)

_NAME_CHARS = re.compile(r"^[A-Za-zÀ-ɏ][A-Za-zÀ-ɏ .'-]*$")
_PHONE_CHARS = re.compile(r"^\+?[\d\s().-]+$")

# Words that show a message is a request, not a name
_NOT_NAME_WORDS = frozenset({
    "i", "want", "need", "book", "booking", "appointment", "please", "help", "hi", "hello",
    "hey", "yes", "no", "what", "when", "can", "could", "would", "available", "time", "to",
})

_CANCEL_PHRASES = re.compile(
    r"\b(cancel|stop|never ?mind|forget it|don'?t want|no longer|delete my|remove my|"
    r"revoke|unsubscribe|opt out)\b",
    re.IGNORECASE,
)


def next_missing_field(collected: dict) -> Optional[str]:
    """First required field without a value, in the fixed order."""
    for field in REQUIRED_FIELDS:
        if not collected.get(field):
            return field
    return None


def looks_like_cancel(text: str) -> bool:
    return bool(_CANCEL_PHRASES.search(text or ""))


def validate_field(field: str, value: str) -> tuple[bool, str]:
    """
    Validate and normalise one field value.
    Returns (True, normalised_value) or (False, error_message).
    """
    value = (value or "").strip().strip(".!,")

    if field == "name":
        value = re.sub(r"\s+", " ", value)
        if len(value) < 2 or len(value) > 100 or not _NAME_CHARS.match(value):
            return False, "That doesn't look like a name."
        if any(word.lower() in _NOT_NAME_WORDS for word in value.split(" ")):
            return False, "That doesn't look like a name."
        return True, value

    if field == "phone":
        digits = re.sub(r"\D", "", value)
        if not _PHONE_CHARS.match(value) or not 7 <= len(digits) <= 15:
            return False, "That doesn't look like a valid phone number."
        return True, ("+" + digits) if value.startswith("+") else digits

    if field == "reason":
        value = re.sub(r"\s+", " ", value)
        if len(value) < 2:
            return False, "Could you tell me a little more about the reason for your visit?"
        return True, value[:500]

    return False, "Unknown field."


def parse_field_message(text: str, expected_field: Optional[str]) -> Optional[tuple[str, str, bool]]:
    """
    Work out which field a message is providing.

    Returns (field, raw_value, explicit) or None when the message doesn't look like
    a field value (questions, empty text). `explicit` is True when the user named the field.
    """
    text = (text or "").strip()
    if not text:
        return None

    for field, pattern in _EXPLICIT_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return field, match.group(1).strip(), True

    if expected_field is None or "?" in text:
        return None

    if expected_field == "name":
        intro = _NAME_INTRO.match(text)
        if intro:
            return "name", intro.group(1).strip(), False

    return expected_field, text, False


def field_prompt(field: Optional[str]) -> str:
    return FIELD_PROMPTS.get(field or "", "")
