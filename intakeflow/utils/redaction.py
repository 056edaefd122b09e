"""
Redaction of personal data before text leaves the system (AI classifier calls).
Replaces emails, phone numbers, dates of birth and self-introduced names with placeholders.
"""
import re
from typing import Iterable, Optional

EMAIL_PLACEHOLDER = "[REDACTED_EMAIL]"
PHONE_PLACEHOLDER = "[REDACTED_PHONE]"
DATE_PLACEHOLDER = "[REDACTED_DATE]"
NAME_PLACEHOLDER = "[REDACTED_NAME]"

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
# 7+ digits with optional separators, optional leading +
_PHONE_RE = re.compile(r"(?<!\w)\+?\d[\d\s().-]{5,}\d(?!\w)")
_DATE_RE = re.compile(
    r"\b(\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4})\b"
)
_NAME_INTRO_RE = re.compile(
    r"\b((?i:my name is|name's))\s+([A-Za-z][A-Za-z'-]+(?:\s+[A-Z][A-Za-z'-]+)*)"
)
# "I'm" / "this is" only count when followed by a capitalised word
_SELF_INTRO_RE = re.compile(
    r"\b((?i:i am|i'm|this is))\s+([A-Z][A-Za-z'-]+(?:\s+[A-Z][A-Za-z'-]+)*)"
)


def redact_text(text: str, known_values: Optional[Iterable[str]] = None) -> tuple[str, bool]:
    """
    Redact personal data from free text.

    Args:
        text: Raw user text.
        known_values: Values already collected for this conversation (name, phone...)
            which are replaced wherever they appear verbatim.

    Returns:
        (redacted_text, was_redacted)
    """
    if not text:
        return "", False

    out = text
    for value in known_values or ():
        if value and len(value) >= 2:
            out = re.sub(re.escape(value), NAME_PLACEHOLDER, out, flags=re.IGNORECASE)

    out = _EMAIL_RE.sub(EMAIL_PLACEHOLDER, out)
    out = _DATE_RE.sub(DATE_PLACEHOLDER, out)
    out = _PHONE_RE.sub(PHONE_PLACEHOLDER, out)
    out = _NAME_INTRO_RE.sub(lambda m: f"{m.group(1)} {NAME_PLACEHOLDER}", out)
    out = _SELF_INTRO_RE.sub(lambda m: f"{m.group(1)} {NAME_PLACEHOLDER}", out)

    return out, out != text
