"""
Intent classifier adapter.

Redacts personal data, sends the latest message plus a bounded, most-recent-first
history window to the AI service, and parses a strict JSON {intent, confidence}.
Timeouts, provider failures and malformed responses all raise TransientError so
the queue retries the event; nothing here falls back to a guessed label.
"""
import asyncio
import json
import logging
import re
from typing import Iterable, Optional

from intakeflow.prompts.receptionist import CLASSIFIER_SYSTEM_PROMPT, REPLY_SYSTEM_PROMPT
from intakeflow.schemas.intents import INTENT_LABELS, IntentResult
from intakeflow.utils.errors import TransientError
from intakeflow.utils.redaction import redact_text

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 1000
MAX_HISTORY_CHARS = 300


def _build_user_message(text: str, history: list[dict]) -> str:
    lines = [f"LATEST: {text[:MAX_MESSAGE_CHARS]}"]
    if history:
        lines.append("EARLIER (most recent first):")
        for item in history:
            speaker = "user" if item.get("direction") == "inbound" else "assistant"
            lines.append(f"- {speaker}: {item.get('text', '')[:MAX_HISTORY_CHARS]}")
    return "\n".join(lines)


def _redact_history(history: list[dict], known_values: Iterable[str]) -> tuple[list[dict], bool]:
    redacted_any = False
    out = []
    known = list(known_values)
    for item in history:
        clean, redacted = redact_text(item.get("text", ""), known)
        redacted_any = redacted_any or redacted
        if clean.strip():
            out.append({"direction": item.get("direction"), "text": clean})
    return out, redacted_any


def parse_classifier_output(content: str) -> dict:
    """
    Extract the JSON object from a model response (tolerates code fences).
    Raises TransientError when no valid object with a known label is present.
    """
    if not content:
        raise TransientError("Classifier returned an empty response")

    raw = content.strip()
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", raw, re.DOTALL)
    if fenced:
        raw = fenced.group(1)
    else:
        braces = re.search(r"\{.*\}", raw, re.DOTALL)
        if braces:
            raw = braces.group(0)

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise TransientError("Classifier response was not valid JSON") from e

    if not isinstance(parsed, dict):
        raise TransientError("Classifier response was not a JSON object")
    label = str(parsed.get("intent", "")).strip().lower()
    if label not in INTENT_LABELS:
        raise TransientError(f"Classifier returned an unknown label ({label[:30]})")
    if "confidence" not in parsed:
        raise TransientError("Classifier response missing confidence")
    return parsed


async def classify_intent(
    text: str,
    history: Optional[list[dict]] = None,
    known_values: Optional[Iterable[str]] = None,
    timeout: Optional[float] = None,
) -> IntentResult:
    """
    Classify one inbound message.

    Args:
        text: Raw message text (redacted before leaving the process).
        history: Prior messages, most recent first, already truncated to the window.
        known_values: Collected values to scrub wherever they appear verbatim.
        timeout: Overall deadline in seconds (defaults to CLASSIFIER_TIMEOUT_SECONDS).
    """
    from intakeflow.config import get_settings
    from intakeflow.services.ai import generate_response
    settings = get_settings()

    known = [v for v in (known_values or []) if v]
    clean_text, redacted = redact_text(text, known)
    clean_history, history_redacted = _redact_history(history or [], known)

    try:
        result = await asyncio.wait_for(
            generate_response(
                CLASSIFIER_SYSTEM_PROMPT,
                _build_user_message(clean_text, clean_history),
                max_tokens=60,
                temperature=0.0,
            ),
            timeout=timeout or settings.classifier_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientError("Intent classification timed out") from e

    parsed = parse_classifier_output(result.get("content", ""))
    intent = IntentResult(
        intent=parsed["intent"],
        confidence=parsed["confidence"],
        redacted=redacted or history_redacted,
        provider=result.get("provider", ""),
    )
    logger.info(
        "Intent classified: %s (%.2f) via %s",
        intent.intent, intent.confidence, intent.provider,
    )
    return intent


async def generate_reply(
    text: str,
    history: Optional[list[dict]] = None,
    intent: str = "ask_question",
    known_values: Optional[Iterable[str]] = None,
    timeout: Optional[float] = None,
) -> str:
    """Short receptionist reply for questions and greetings. Raises TransientError on failure."""
    from intakeflow.config import get_settings
    from intakeflow.services.ai import generate_response
    settings = get_settings()

    known = [v for v in (known_values or []) if v]
    clean_text, _ = redact_text(text, known)
    clean_history, _ = _redact_history(history or [], known)

    try:
        result = await asyncio.wait_for(
            generate_response(
                f"{REPLY_SYSTEM_PROMPT}\n\nDetected intent of the latest message: {intent}.",
                _build_user_message(clean_text, clean_history),
                temperature=0.3,
            ),
            timeout=timeout or settings.classifier_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientError("Reply generation timed out") from e

    reply = (result.get("content") or "").strip()
    if not reply:
        raise TransientError("Reply generation returned empty content")
    return reply[:640]
