"""
Incident notification channels - local alert, chat-ops, email, pager, authorities.

Every channel exposes `await send(message) -> ChannelResult` and reports failure
in the result rather than raising. The incident manager still runs each send in
its own task with its own timeout, so a misbehaving channel cannot block others.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"

# Incident severity -> PagerDuty Events v2 severity
_PAGER_SEVERITY = {
    "critical": "critical",
    "high": "error",
    "medium": "warning",
    "warning": "warning",
    "info": "info",
}


@dataclass
class NotificationMessage:
    title: str
    body: str
    severity: str
    incident_id: Optional[str] = None
    incident_type: Optional[str] = None
    host: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def as_text(self) -> str:
        lines = [self.title, self.body]
        if self.incident_id:
            lines.append(f"incident_id: {self.incident_id}")
        for key, val in self.extra.items():
            lines.append(f"{key}: {val}")
        return "\n".join(lines)


@dataclass
class ChannelResult:
    channel: str
    delivered: bool
    error: Optional[str] = None
    reference: Optional[str] = None  # Provider message id / dedup key


class NotificationChannel:
    """Base class. Subclasses implement _deliver() and may raise freely."""

    name = "channel"

    async def send(self, message: NotificationMessage) -> ChannelResult:
        try:
            reference = await self._deliver(message)
            logger.info(
                "Notification delivered via %s for incident %s",
                self.name, message.incident_id,
                extra={"channel": self.name, "incident_id": message.incident_id},
            )
            return ChannelResult(channel=self.name, delivered=True, reference=reference)
        except Exception as e:
            logger.warning(
                "Notification via %s failed for incident %s: %s",
                self.name, message.incident_id, str(e),
                extra={"channel": self.name, "incident_id": message.incident_id},
            )
            return ChannelResult(channel=self.name, delivered=False, error=str(e))

    async def _deliver(self, message: NotificationMessage) -> Optional[str]:
        raise NotImplementedError


class LocalAlertChannel(NotificationChannel):
    """Writes the alert to the local alert log. Always available."""

    name = "local"

    def __init__(self):
        self._logger = logging.getLogger("billing_sentinel.alerts")

    async def _deliver(self, message: NotificationMessage) -> Optional[str]:
        self._logger.critical(
            "INCIDENT %s: %s",
            message.title, message.body,
            extra={"incident_id": message.incident_id, "severity": message.severity},
        )
        return None


class ChatOpsChannel(NotificationChannel):
    """Slack/Discord incoming webhook."""

    name = "chat_ops"

    def __init__(self, webhook_url: str, timeout: float = 10.0, transport=None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._transport = transport

    async def _deliver(self, message: NotificationMessage) -> Optional[str]:
        import httpx

        content = f"\U0001f6a8 **{message.title}**\n{message.body}"
        if message.incident_id:
            content += f"\n`incident_id: {message.incident_id}`"
        for key, val in message.extra.items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.webhook_url, json={"content": content, "text": content},
            )
            response.raise_for_status()
        return None


class EmailChannel(NotificationChannel):
    """SendGrid email. The SDK is synchronous, so sends run in the default executor."""

    name = "email"

    def __init__(self, api_key: str, from_email: str, to_email: str):
        self.api_key = api_key
        self.from_email = from_email
        self.to_email = to_email

    def _subject(self, message: NotificationMessage) -> str:
        return f"[{message.severity.upper()}] {message.title}"

    def _text(self, message: NotificationMessage) -> str:
        return message.as_text()

    async def _deliver(self, message: NotificationMessage) -> Optional[str]:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        mail = Mail(
            from_email=Email(self.from_email, "Billing Sentinel"),
            to_emails=To(self.to_email),
            subject=self._subject(message),
        )
        mail.content = [Content("text/plain", self._text(message))]

        sg = SendGridAPIClient(api_key=self.api_key)
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(mail))
        if response.status_code >= 400:
            raise RuntimeError(f"SendGrid returned {response.status_code}")
        return response.headers.get("X-Message-Id", "") or None


class PagerChannel(NotificationChannel):
    """PagerDuty Events API v2. The incident id doubles as dedup_key."""

    name = "pager"

    def __init__(
        self,
        routing_key: str,
        timeout: float = 10.0,
        url: str = PAGERDUTY_EVENTS_URL,
        transport=None,
    ):
        self.routing_key = routing_key
        self.timeout = timeout
        self.url = url
        self._transport = transport

    async def _deliver(self, message: NotificationMessage) -> Optional[str]:
        import httpx

        body = {
            "routing_key": self.routing_key,
            "event_action": "trigger",
            "payload": {
                "summary": f"{message.title}: {message.body}"[:1024],
                "source": message.host or "billing-sentinel",
                "severity": _PAGER_SEVERITY.get(message.severity, "critical"),
                "component": message.incident_type,
                "custom_details": message.extra,
            },
        }
        if message.incident_id:
            body["dedup_key"] = message.incident_id

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()
            data = response.json()
        return data.get("dedup_key")


class AuthorityChannel(EmailChannel):
    """
    Notification to the compliance officer who relays to external authorities
    (data protection authority, police, professional council).
    """

    name = "authorities"

    def _subject(self, message: NotificationMessage) -> str:
        return f"[AUTHORITY NOTIFICATION] {message.title}"

    def _text(self, message: NotificationMessage) -> str:
        authorities = message.extra.get("authorities") or []
        header = "Authorities to notify: " + ", ".join(authorities)
        return f"{header}\n\n{message.as_text()}"


def build_channels(settings) -> list[NotificationChannel]:
    """Fan-out channels for incident reports. Unconfigured channels are skipped."""
    channels: list[NotificationChannel] = [LocalAlertChannel()]
    timeout = settings.notification_timeout_seconds

    if settings.alert_webhook_url:
        channels.append(ChatOpsChannel(settings.alert_webhook_url, timeout=timeout))
    if settings.sendgrid_api_key and settings.security_team_email:
        channels.append(EmailChannel(
            settings.sendgrid_api_key, settings.alert_from_email, settings.security_team_email,
        ))
    if settings.pagerduty_routing_key:
        channels.append(PagerChannel(settings.pagerduty_routing_key, timeout=timeout))

    logger.info("Incident channels configured: %s", ", ".join(c.name for c in channels))
    return channels


def build_authority_channel(settings) -> Optional[NotificationChannel]:
    if settings.sendgrid_api_key and settings.authority_contact_email:
        return AuthorityChannel(
            settings.sendgrid_api_key, settings.alert_from_email, settings.authority_contact_email,
        )
    logger.warning("AUTHORITY_CONTACT_EMAIL not configured - authority notifications are log-only")
    return None
