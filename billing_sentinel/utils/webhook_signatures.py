"""
Webhook signature validation - verify incoming Stripe webhooks are authentic.

Header format: t=<unix_ts>,v1=<hex_hmac>[,v1=<hex_hmac>...]
- Multiple v1 entries are sent while a signing secret is being rotated;
  any one match is enough.
- The MAC covers the literal bytes "<t>." + raw body. The raw body must be
  the exact bytes received, never a re-serialized JSON document.
- Replay protection: |now - t| must not exceed the tolerance (equality accepted).

Validation never raises: every malformed input is a rejection.
"""
import enum
import hashlib
import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"


class SignatureCheck(str, enum.Enum):
    """Outcome of a signature inspection. Only VALID means accept."""

    VALID = "valid"
    EMPTY_SECRET = "empty_secret"
    MISSING_HEADER = "missing_header"
    MISSING_TIMESTAMP = "missing_timestamp"
    INVALID_TIMESTAMP = "invalid_timestamp"
    TIMESTAMP_OUT_OF_TOLERANCE = "timestamp_out_of_tolerance"
    NO_SIGNATURES = "no_signatures"
    SIGNATURE_MISMATCH = "signature_mismatch"

    @property
    def is_timestamp_issue(self) -> bool:
        return self in (
            SignatureCheck.MISSING_TIMESTAMP,
            SignatureCheck.INVALID_TIMESTAMP,
            SignatureCheck.TIMESTAMP_OUT_OF_TOLERANCE,
        )


def parse_signature_header(signature_header: str) -> tuple[Optional[str], list[str]]:
    """
    Split a signature header into (timestamp, [v1 signatures]).
    Unknown schemes (v0, etc.) and malformed items are skipped.
    """
    timestamp = None
    signatures: list[str] = []
    for item in (signature_header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(raw_payload: bytes, secret: str, timestamp: str) -> str:
    """Hex HMAC-SHA256 over "<timestamp>." + raw payload bytes."""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_payload
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload,
        hashlib.sha256,
    ).hexdigest()


def inspect_signature(
    raw_payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> SignatureCheck:
    """
    Validate a Stripe-style signature header and report why it was rejected.
    Callers use the reason to pick the audit severity.
    """
    if not secret:
        return SignatureCheck.EMPTY_SECRET
    if not signature_header:
        return SignatureCheck.MISSING_HEADER

    timestamp_str, signatures = parse_signature_header(signature_header)
    if not timestamp_str:
        return SignatureCheck.MISSING_TIMESTAMP

    try:
        timestamp = int(timestamp_str)
    except (ValueError, TypeError):
        return SignatureCheck.INVALID_TIMESTAMP

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning(
            "Webhook timestamp outside tolerance: skew=%.0fs tolerance=%ds",
            current - timestamp, tolerance,
        )
        return SignatureCheck.TIMESTAMP_OUT_OF_TOLERANCE

    if not signatures:
        return SignatureCheck.NO_SIGNATURES

    try:
        expected = compute_signature(raw_payload, secret, timestamp_str).encode("ascii")
    except Exception as e:
        logger.error("HMAC-SHA256 computation error: %s", str(e))
        return SignatureCheck.SIGNATURE_MISMATCH

    # Check every candidate so timing does not reveal which one matched
    matched = False
    for candidate in signatures:
        if hmac.compare_digest(expected, candidate.encode("utf-8")):
            matched = True

    return SignatureCheck.VALID if matched else SignatureCheck.SIGNATURE_MISMATCH


def verify_signature(
    raw_payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """
    Returns True only for a fresh timestamp and at least one matching v1 MAC.
    Returns False (never raises) for anything else.
    """
    try:
        return inspect_signature(
            raw_payload, signature_header, secret, tolerance=tolerance, now=now,
        ) is SignatureCheck.VALID
    except Exception as e:
        logger.error("Webhook signature validation error: %s", str(e))
        return False


def generate_signature_header(
    raw_payload: bytes,
    secret: str,
    timestamp: Optional[int] = None,
) -> str:
    """Build a valid header for a payload. Used by tests and the replay script."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(raw_payload, secret, ts)}"


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit details."""
    return hashlib.sha256(body).hexdigest()
