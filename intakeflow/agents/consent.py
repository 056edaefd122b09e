"""
Consent Agent - asks for and reads the patient's consent to store their details.

Consent is asked once all booking fields are collected and before anything is
booked. A grant carries over to later booking cycles of the same conversation;
a denial or revocation means the next cycle asks again.
"""
import re
from typing import Optional

CONSENT_GRANTED = "granted"
CONSENT_DENIED = "denied"
CONSENT_REVOKED = "revoked"

CONSENT_PROMPT = (
    "Before I book this, may we store the details you've shared to manage your "
    "appointment? Reply YES to agree or NO to decline."
)
CONSENT_DENIED_MESSAGE = (
    "No problem. I haven't saved any of your information. "
    "Message us anytime if you'd like to book."
)

_GRANT_WORDS = frozenset({"yes", "y", "yeah", "yep", "yup", "agree", "agreed", "ok", "okay", "sure", "consent"})
_DENY_WORDS = frozenset({"no", "n", "nope", "nah", "deny", "decline", "never", "refuse"})

_GRANT_PHRASES = re.compile(r"\b(?:i agree|i consent|i accept|that'?s fine|go ahead)\b", re.IGNORECASE)
_DENY_PHRASES = re.compile(
    r"\b(?:i do not (?:agree|consent)|i don'?t (?:agree|consent)|i'?d rather not|do not store|don'?t store)\b",
    re.IGNORECASE,
)
_WORD = re.compile(r"[a-z']+")


def parse_consent_reply(text: Optional[str]) -> Optional[str]:
    """
    CONSENT_GRANTED, CONSENT_DENIED, or None when the reply is neither.

    Only the first word or a whole consent phrase counts, so "I don't mind"
    is not read as a refusal.
    """
    text = (text or "").strip().lower()
    if not text:
        return None

    if _DENY_PHRASES.search(text):
        return CONSENT_DENIED
    if _GRANT_PHRASES.search(text):
        return CONSENT_GRANTED

    words = _WORD.findall(text)
    if not words:
        return None
    if words[0] in _GRANT_WORDS:
        return CONSENT_GRANTED
    if words[0] in _DENY_WORDS:
        return CONSENT_DENIED
    return None
