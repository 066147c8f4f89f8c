"""
Alerting - local real-time alerts and rate-limited operational alerts.

Two paths:
1. RealtimeAlerter: synchronous local alert raised by the audit logger for every
   high/critical entry. Never rate-limited, never touches the network.
2. send_alert(): operational heads-up (payment failed, dispute opened) posted to
   the chat-ops webhook. Rate-limited per alert type to prevent alert storms.

Cooldowns stored in Redis (survives restarts, prevents post-deploy alert spam),
with an in-memory fallback when Redis is down.
"""
import logging
import time
from collections import deque
from typing import Optional

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("billing_sentinel.alerts")

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds)
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "payment_failed": 60,
    "dispute_created": 0,  # Every dispute needs eyes on it
}

# In-memory fallback when Redis is down (cleared on restart, but prevents alert storms)
_local_cooldowns: dict[str, float] = {}  # cooldown key → expiry timestamp


class AlertType:
    """Alert type constants."""
    PAYMENT_FAILED = "payment_failed"
    DISPUTE_CREATED = "dispute_created"
    ACCOUNT_DEAUTHORIZED = "account_deauthorized"
    WEBHOOK_RETRIES_EXHAUSTED = "webhook_retries_exhausted"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"


class RealtimeAlerter:
    """
    Local real-time alert sink for high/critical audit entries.
    Writes one CRITICAL/ERROR line per alert and keeps the most recent alerts
    in memory for the readiness endpoint and tests.
    """

    def __init__(self, keep_last: int = 50):
        self.sent = 0
        self.recent: deque[dict] = deque(maxlen=keep_last)

    def alert(
        self,
        event: str,
        severity: str,
        entry_id: str,
        summary: Optional[str] = None,
    ) -> None:
        self.sent += 1
        record = {
            "event": event,
            "severity": severity,
            "entry_id": entry_id,
            "summary": summary,
            "at": time.time(),
        }
        self.recent.append(record)

        message = f"ALERT [{event}] severity={severity} entry={entry_id}"
        if summary:
            message += f": {summary}"
        if severity == "critical":
            alert_logger.critical(message, extra={"severity": severity})
        else:
            alert_logger.error(message, extra={"severity": severity})


def _get_cooldown_seconds(alert_type: str) -> int:
    """Get cooldown duration for an alert type (per-type override or default)."""
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    cooldown_key: Optional[str] = None,
) -> bool:
    """
    Send an operational alert to the log and the chat-ops webhook.
    Rate-limited per alert type (or per cooldown_key). Returns True if sent.
    """
    if not await _acquire_cooldown(cooldown_key or alert_type, _get_cooldown_seconds(alert_type)):
        return False

    from billing_sentinel.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    elif severity == "warning":
        logger.warning(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, cid, extra, severity)
    return True


async def _acquire_cooldown(key: str, cooldown: int) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.

    Uses Redis SET NX EX (atomic) to eliminate the race between check and record.
    Falls back to in-memory dict when Redis is unavailable.
    """
    if cooldown <= 0:
        return True

    try:
        from billing_sentinel.utils.dedup import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"billing_sentinel:alert_cooldown:{key}", "1", nx=True, ex=cooldown,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        expiry = _local_cooldowns.get(key, 0)
        if now < expiry:
            return False
        _local_cooldowns[key] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
    severity: str = "error",
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from billing_sentinel.config import get_settings
        settings = get_settings()

        webhook_url = settings.alert_webhook_url
        if not webhook_url:
            return

        import httpx

        severity_emoji = {
            "critical": "\U0001f6a8",
            "error": "❌",
            "warning": "⚠️",
        }.get(severity, "ℹ️")
        content = f"{severity_emoji} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content, "text": content})
    except Exception as e:
        # Alert sending failure should never crash the system
        logger.warning("Failed to send webhook alert: %s", str(e))
