"""
Redaction of key material before anything reaches a log sink.

Values that look like Stripe keys (pk_/sk_/rk_/whsec_) and values stored under
sensitive field names are replaced by a fingerprint marker.
"""
import re
from typing import Any

from billing_sentinel.utils.encryption import fingerprint

_SECRET_VALUE_PATTERN = re.compile(r"\b(?:sk|pk|rk)_(?:test|live)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+")

_SENSITIVE_KEYS = {
    "secret",
    "api_key",
    "secret_key",
    "webhook_secret",
    "password",
    "token",
    "authorization",
    "signature",
    "stripe_signature",
    "key_material",
}

_MAX_DEPTH = 5
TRUNCATED = "[truncated]"


def _mask(value: str) -> str:
    return f"[redacted:{fingerprint(value)}]"


def redact_value(value: Any) -> Any:
    """Mask any embedded key material inside a string value."""
    if isinstance(value, str):
        return _SECRET_VALUE_PATTERN.sub(lambda m: _mask(m.group(0)), value)
    return value


def _redact(value: Any, depth: int) -> Any:
    if isinstance(value, (dict, list, tuple)) and depth >= _MAX_DEPTH:
        return TRUNCATED
    if isinstance(value, dict):
        return redact_details(value, depth + 1)
    if isinstance(value, (list, tuple)):
        return [_redact(v, depth + 1) for v in value]
    return redact_value(value)


def redact_details(details: dict, _depth: int = 0) -> dict:
    """
    Return a copy of details with sensitive keys and key-like values masked.
    Containers nested deeper than _MAX_DEPTH are replaced by TRUNCATED.
    """
    redacted: dict = {}
    for key, value in details.items():
        key_str = str(key)
        if key_str.lower() in _SENSITIVE_KEYS and value:
            redacted[key_str] = _mask(str(value))
        else:
            redacted[key_str] = _redact(value, _depth)
    return redacted
