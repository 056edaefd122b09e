"""
Intent labels and the classifier result schema.
"""
from pydantic import BaseModel, Field, field_validator


class Intent:
    """Intent label constants."""
    BOOK_APPOINTMENT = "book_appointment"
    ASK_QUESTION = "ask_question"
    CHECK_AVAILABILITY = "check_availability"
    GREETING = "greeting"
    CANCEL = "cancel_appointment"
    REVOKE_CONSENT = "revoke_consent"
    UNKNOWN = "unknown"


INTENT_LABELS = (
    Intent.BOOK_APPOINTMENT,
    Intent.ASK_QUESTION,
    Intent.CHECK_AVAILABILITY,
    Intent.GREETING,
    Intent.CANCEL,
    Intent.REVOKE_CONSENT,
    Intent.UNKNOWN,
)


class IntentResult(BaseModel):
    """Classifier output. Unknown labels collapse to `unknown`; confidence is clamped to [0, 1]."""
    intent: str = Field(default=Intent.UNKNOWN)
    confidence: float = Field(default=0.0)
    redacted: bool = Field(default=False, description="True when personal data was removed before the call")
    provider: str = Field(default="")

    @field_validator("intent", mode="before")
    @classmethod
    def _known_label(cls, v):
        label = str(v or "").strip().lower()
        return label if label in INTENT_LABELS else Intent.UNKNOWN

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(1.0, max(0.0, value))
