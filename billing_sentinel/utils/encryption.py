"""
Encryption utilities for key material and high-assurance audit details.
Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.

There is no plaintext fallback: a missing or invalid key raises
KeyManagementError so nothing sensitive is ever stored unprotected.
"""
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from billing_sentinel.exceptions import KeyManagementError

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 8


def get_fernet(key: Optional[str] = None) -> Fernet:
    """Get a Fernet cipher using the given key or the configured ENCRYPTION_KEY."""
    if key is None:
        from billing_sentinel.config import get_settings
        key = get_settings().encryption_key

    if not key:
        raise KeyManagementError("ENCRYPTION_KEY not configured")

    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except (ValueError, TypeError) as e:
        raise KeyManagementError(f"ENCRYPTION_KEY is not a valid Fernet key: {e}") from e


def encrypt_value(plaintext: str, fernet: Optional[Fernet] = None) -> str:
    """Encrypt a string value. Returns the Fernet token as a string."""
    if not plaintext:
        raise KeyManagementError("Refusing to encrypt an empty value")
    cipher = fernet or get_fernet()
    return cipher.encrypt(plaintext.encode()).decode()


def decrypt_value(token: str, fernet: Optional[Fernet] = None) -> str:
    """Decrypt a Fernet token. Raises KeyManagementError if the token is invalid."""
    cipher = fernet or get_fernet()
    try:
        return cipher.decrypt(token.encode()).decode()
    except (InvalidToken, ValueError) as e:
        raise KeyManagementError("Stored value could not be decrypted") from e


def fingerprint(secret: str) -> str:
    """Truncated SHA-256 of a secret. The only form of key material safe to log."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
