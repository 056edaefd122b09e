"""
Encryption utilities for sensitive data (dead-letter payloads, collected patient fields).
Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.

Two flavours:
- encrypt_value / decrypt_value: soft mode for short field values; stores as-is
  when no key is configured (development) and tolerates legacy plaintext.
- encrypt_payload / decrypt_payload: strict mode for whole event payloads; refuses
  to run without a key so raw messages never land unencrypted in the dead-letter table.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class EncryptionNotConfiguredError(RuntimeError):
    """Raised when strict payload encryption is requested without ENCRYPTION_KEY."""


def _get_fernet():
    """Get a Fernet cipher using the configured encryption key."""
    from cryptography.fernet import Fernet
    from intakeflow.config import get_settings
    settings = get_settings()

    key = settings.encryption_key
    if not key:
        return None

    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_value(plaintext: str) -> str:
    """
    Encrypt a string value. Returns the encrypted token as a string.
    Falls back to storing plaintext if encryption key is not configured.
    """
    if not plaintext:
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        logger.warning("ENCRYPTION_KEY not configured - storing values as-is")
        return plaintext

    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(encrypted: str) -> Optional[str]:
    """
    Decrypt a string value. Returns the plaintext string.
    Falls back to returning the value as-is if decryption fails
    (handles legacy unencrypted values).
    """
    if not encrypted:
        return encrypted

    fernet = _get_fernet()
    if fernet is None:
        return encrypted

    from cryptography.fernet import InvalidToken
    try:
        return fernet.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        # Value may be legacy plaintext - return as-is
        return encrypted


def encrypt_payload(payload: str) -> str:
    """Encrypt a serialised event payload. Raises if no key is configured."""
    fernet = _get_fernet()
    if fernet is None:
        raise EncryptionNotConfiguredError("ENCRYPTION_KEY is required to store event payloads")
    return fernet.encrypt(payload.encode()).decode()


def decrypt_payload(encrypted: str) -> str:
    """Decrypt a payload produced by encrypt_payload. Raises on a bad token or missing key."""
    fernet = _get_fernet()
    if fernet is None:
        raise EncryptionNotConfiguredError("ENCRYPTION_KEY is required to read event payloads")
    return fernet.decrypt(encrypted.encode()).decode()
