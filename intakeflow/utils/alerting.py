"""
Critical alerting system - sends alerts on important pipeline events.

Alert channels:
1. Structured log (always) - at ERROR level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: per-type cooldowns to prevent alert storms.
Cooldowns stored in Redis (survives restarts), in-memory fallback when Redis is down.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds)
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "dead_letter_exhausted": 60,
    "repeated_internal_errors": 900,
}

# In-memory fallback when Redis is down
_local_cooldowns: dict[str, float] = {}  # alert_type -> expiry (monotonic)

# Distinct event ids that failed with internal errors, with the time they failed
_internal_error_events: dict[str, float] = {}


class AlertType:
    """Alert type constants."""
    DEAD_LETTER_EXHAUSTED = "dead_letter_exhausted"
    REPEATED_INTERNAL_ERRORS = "repeated_internal_errors"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    QUEUE_UNAVAILABLE = "queue_unavailable"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type to prevent alert storms.
    """
    if not await _acquire_cooldown(alert_type):
        return

    from intakeflow.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, cid, extra)


async def record_internal_error(event_id: str) -> None:
    """
    Track an internal (unexpected) error for one event.
    Fires REPEATED_INTERNAL_ERRORS once the number of distinct events failing
    inside the window reaches the configured threshold.
    """
    from intakeflow.config import get_settings
    settings = get_settings()

    now = time.monotonic()
    window = settings.internal_error_alert_window_seconds
    for key, seen_at in list(_internal_error_events.items()):
        if now - seen_at > window:
            del _internal_error_events[key]
    _internal_error_events[event_id] = now

    distinct = len(_internal_error_events)
    if distinct >= settings.internal_error_alert_threshold:
        await send_alert(
            AlertType.REPEATED_INTERNAL_ERRORS,
            f"{distinct} distinct events failed with internal errors in the last {window}s",
            severity="critical",
            extra={"distinct_events": distinct},
        )


async def _acquire_cooldown(alert_type: str) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.
    Uses Redis SET NX EX, falls back to an in-memory dict when Redis is unavailable.
    """
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from intakeflow.utils.redis_client import get_redis
        redis = await get_redis()
        cooldown_key = f"intakeflow:alert_cooldown:{alert_type}"
        acquired = await redis.set(cooldown_key, "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        expiry = _local_cooldowns.get(alert_type, 0)
        if now < expiry:
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    from intakeflow.config import get_settings
    webhook_url = get_settings().alert_webhook_url
    if not webhook_url:
        return

    content = f"**{alert_type}**\n{message}"
    if correlation_id:
        content += f"\n`correlation_id: {correlation_id}`"
    for key, val in (extra or {}).items():
        content += f"\n`{key}: {val}`"

    try:
        import httpx
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert delivery failure must never break the pipeline
        logger.warning("Failed to send webhook alert: %s", str(e))
