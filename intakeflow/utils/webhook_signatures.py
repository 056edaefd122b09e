"""
Webhook signature validation - verify incoming webhooks are authentic.

Meta-style platforms sign the raw request body with HMAC-SHA256 using the app
secret and send it as `X-Hub-Signature-256: sha256=<hex>`.
"""
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """Compute the header value a platform would send for this body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def validate_hmac_sha256(
    secret: str,
    signature: str,
    body: bytes,
    header_prefix: str = SIGNATURE_PREFIX,
) -> bool:
    """
    Validate generic HMAC-SHA256 webhook signature.
    Handles signatures with optional prefix (e.g., "sha256=...").
    Returns True if valid, False if invalid.
    """
    if not secret or not signature:
        return False

    sig = signature.strip()
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    expected = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, sig.lower())


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for fallback event ids and audit."""
    return hashlib.sha256(body).hexdigest()


def verify_webhook_signature(signature: str, body: bytes) -> bool:
    """
    Verify an inbound webhook against the configured app secret.

    Without a secret, unsigned webhooks are accepted only outside production
    or when ALLOW_UNSIGNED_WEBHOOKS is set explicitly.
    """
    from intakeflow.config import get_settings
    settings = get_settings()

    if not settings.webhook_app_secret:
        if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
            logger.error("WEBHOOK_APP_SECRET missing in production - rejecting webhook")
            return False
        logger.warning(
            "WEBHOOK_APP_SECRET not set - accepting webhook without signature verification. "
            "Configure the secret for production."
        )
        return True

    if not signature:
        logger.warning("Missing %s header", SIGNATURE_HEADER)
        return False

    return validate_hmac_sha256(settings.webhook_app_secret, signature, body)
