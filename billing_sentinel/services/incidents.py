"""
Incident manager - escalates critical findings into tracked incidents.

report_incident / report_emergency write the local ticket (incident row plus
its first history row) and a critical audit entry, then fan out to the
notification channels in the background. The caller never waits on external
channels. Critical audit entries escalate through report_emergency, so the
authority policy applies to them too.

Status history is append-only: every transition adds an IncidentStatusChange.
"""
import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from billing_sentinel.exceptions import IncidentNotFound, InvalidIncidentTransition
from billing_sentinel.schemas.audit import AuditEntry, AuditEvent, Severity
from billing_sentinel.services.notification_channels import (
    ChannelResult,
    NotificationChannel,
    NotificationMessage,
)
from billing_sentinel.utils.redaction import redact_details
from billing_sentinel.utils.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class IncidentType(str, Enum):
    """The one closed incident taxonomy."""
    DATA_BREACH_SUSPECTED = "data_breach_suspected"
    DATA_EXFILTRATION = "data_exfiltration"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    EXTERNAL_ATTACK = "external_attack"
    DATA_INTEGRITY_VIOLATION = "data_integrity_violation"
    CERTIFICATE_PINNING_FAILURE = "certificate_pinning_failure"
    CERTIFICATE_PINNING_BYPASS = "certificate_pinning_bypass"
    DEVICE_COMPROMISED = "device_compromised"
    JAILBREAK_DETECTED = "jailbreak_detected"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SYSTEM_FAILURE = "system_failure"


class IncidentStatus(str, Enum):
    REPORTED = "reported"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    IGNORED = "ignored"


ALLOWED_TRANSITIONS: dict[IncidentStatus, frozenset[IncidentStatus]] = {
    IncidentStatus.REPORTED: frozenset({
        IncidentStatus.INVESTIGATING, IncidentStatus.RESOLVED, IncidentStatus.IGNORED,
    }),
    IncidentStatus.INVESTIGATING: frozenset({
        IncidentStatus.RESOLVED, IncidentStatus.IGNORED,
    }),
    IncidentStatus.RESOLVED: frozenset(),
    IncidentStatus.IGNORED: frozenset(),
}

# Every IncidentType must appear here; device-posture findings stay internal.
AUTHORITY_NOTIFICATION_POLICY: dict[IncidentType, bool] = {
    IncidentType.DATA_BREACH_SUSPECTED: True,
    IncidentType.DATA_EXFILTRATION: True,
    IncidentType.UNAUTHORIZED_ACCESS: True,
    IncidentType.EXTERNAL_ATTACK: True,
    IncidentType.DATA_INTEGRITY_VIOLATION: False,
    IncidentType.CERTIFICATE_PINNING_FAILURE: False,
    IncidentType.CERTIFICATE_PINNING_BYPASS: False,
    IncidentType.DEVICE_COMPROMISED: False,
    IncidentType.JAILBREAK_DETECTED: False,
    IncidentType.SUSPICIOUS_ACTIVITY: False,
    IncidentType.SYSTEM_FAILURE: False,
}

DATA_PROTECTION_AUTHORITY = "data_protection_authority"
POLICE = "police"
PROFESSIONAL_COUNCIL = "professional_council"

_DATA_PROTECTION_TYPES = frozenset({
    IncidentType.DATA_BREACH_SUSPECTED,
    IncidentType.DATA_EXFILTRATION,
    IncidentType.UNAUTHORIZED_ACCESS,
})

# Critical audit events that map onto a specific incident type when escalated
_ESCALATION_TYPES = {
    AuditEvent.UNAUTHORIZED_ACCESS: IncidentType.UNAUTHORIZED_ACCESS,
    AuditEvent.JAILBREAK_DETECTED: IncidentType.JAILBREAK_DETECTED,
    AuditEvent.CERTIFICATE_PINNING_FAILED: IncidentType.CERTIFICATE_PINNING_FAILURE,
    AuditEvent.SUSPICIOUS_ACTIVITY: IncidentType.SUSPICIOUS_ACTIVITY,
}


def should_notify_authorities(incident_type: Union[IncidentType, str]) -> bool:
    return AUTHORITY_NOTIFICATION_POLICY[IncidentType(incident_type)]


def authorities_for(incident_type: Union[IncidentType, str]) -> list[str]:
    """Which authorities receive an emergency of this type. Empty when policy says no."""
    incident_type = IncidentType(incident_type)
    if not should_notify_authorities(incident_type):
        return []
    authorities = []
    if incident_type in _DATA_PROTECTION_TYPES:
        authorities.append(DATA_PROTECTION_AUTHORITY)
    if incident_type == IncidentType.EXTERNAL_ATTACK:
        authorities.append(POLICE)
    authorities.append(PROFESSIONAL_COUNCIL)
    return authorities


class IncidentManager:
    """Injected with the audit logger, a session factory and the channel set."""

    def __init__(
        self,
        audit,
        session_factory,
        channels: Optional[list[NotificationChannel]] = None,
        authority_channel: Optional[NotificationChannel] = None,
        channel_timeout: float = 10.0,
        host: str = "billing-sentinel",
        background: Optional[BackgroundTasks] = None,
    ):
        self.audit = audit
        self.session_factory = session_factory
        self.channels = list(channels or [])
        self.authority_channel = authority_channel
        self.channel_timeout = channel_timeout
        self.host = host
        self.background = background or BackgroundTasks("incidents")
        self.deliveries: deque[tuple[str, ChannelResult]] = deque(maxlen=200)

    async def report_incident(
        self,
        incident_type: Union[IncidentType, str],
        host: str,
        severity: Union[Severity, str],
        details: Optional[dict[str, Any]] = None,
    ):
        """
        Record an incident, audit it at critical, fan out to channels.

        A failed ticket write does not stop the audit entry or the fan-out;
        the store error is re-raised once both are under way.
        """
        incident_type = IncidentType(incident_type)
        severity = Severity(severity)

        incident, store_error = await self._open_ticket(
            incident_type=incident_type.value,
            host=host,
            severity=severity.value,
            details=redact_details(dict(details or {})),
        )
        persisted = store_error is None

        await self.audit.log(
            AuditEvent.INCIDENT_REPORTED,
            {
                **(details or {}),
                "incident_id": incident.id,
                "incident_type": incident_type.value,
                "host": host,
                "severity": severity.value,
                "status": incident.status,
                "persisted": persisted,
            },
            Severity.CRITICAL,
            subject_id=incident.id,
        )
        logger.critical(
            "Security incident reported: %s type=%s host=%s",
            incident.id, incident_type.value, host,
            extra={"incident_id": incident.id, "severity": severity.value},
        )

        extra = {k: v for k, v in (details or {}).items() if isinstance(v, (str, int, float, bool))}
        if not persisted:
            extra["ticket_persisted"] = False
        message = NotificationMessage(
            title=f"Security incident: {incident_type.value}",
            body=f"Host {host} reported a {severity.value} {incident_type.value} incident.",
            severity=severity.value,
            incident_id=incident.id,
            incident_type=incident_type.value,
            host=host,
            extra=extra,
        )
        self._fan_out(message, self.channels)

        if store_error is not None:
            raise store_error
        return incident

    async def report_emergency(
        self,
        incident_type: Union[IncidentType, str],
        host: str,
        reason: str,
        emergency_code: str,
        details: Optional[dict[str, Any]] = None,
    ):
        """Critical incident requiring immediate action; may notify authorities."""
        incident_type = IncidentType(incident_type)
        authorities = authorities_for(incident_type)

        incident, store_error = await self._open_ticket(
            incident_type=incident_type.value,
            host=host,
            severity=Severity.CRITICAL.value,
            details={
                **redact_details(dict(details or {})),
                "reason": reason,
                "action_required": "immediate",
            },
            is_emergency=True,
            emergency_code=emergency_code,
            authorities_notified=bool(authorities),
        )
        persisted = store_error is None

        await self.audit.log(
            AuditEvent.EMERGENCY_REPORTED,
            {
                **(details or {}),
                "incident_id": incident.id,
                "incident_type": incident_type.value,
                "host": host,
                "reason": reason,
                "emergency_code": emergency_code,
                "action_required": "immediate",
                "persisted": persisted,
            },
            Severity.CRITICAL,
            subject_id=incident.id,
        )
        logger.critical(
            "SECURITY EMERGENCY %s: %s code=%s host=%s",
            incident.id, incident_type.value, emergency_code, host,
            extra={"incident_id": incident.id, "severity": "critical"},
        )

        extra: dict[str, Any] = {"emergency_code": emergency_code}
        if not persisted:
            extra["ticket_persisted"] = False
        message = NotificationMessage(
            title=f"SECURITY EMERGENCY: {incident_type.value}",
            body=reason,
            severity=Severity.CRITICAL.value,
            incident_id=incident.id,
            incident_type=incident_type.value,
            host=host,
            extra=extra,
        )
        self._fan_out(message, self.channels)

        if authorities:
            authority_message = NotificationMessage(
                title=message.title,
                body=reason,
                severity=message.severity,
                incident_id=incident.id,
                incident_type=incident_type.value,
                host=host,
                extra={**extra, "authorities": authorities},
            )
            self.background.spawn(
                self._notify_authorities(authority_message, authorities),
                name=f"authorities-{incident.id}",
            )

        if store_error is not None:
            raise store_error
        return incident

    async def update_incident_status(
        self,
        incident_id: str,
        new_status: Union[IncidentStatus, str],
        resolution: Optional[str] = None,
    ):
        """Append a status change. Raises IncidentNotFound / InvalidIncidentTransition."""
        try:
            new_status = IncidentStatus(new_status)
        except ValueError as e:
            raise InvalidIncidentTransition(f"Unknown incident status: {new_status}") from e

        from billing_sentinel.models.incident import Incident, IncidentStatusChange

        async with self.session_factory() as session:
            incident = await session.get(Incident, incident_id)
            if incident is None:
                raise IncidentNotFound(incident_id)

            current = IncidentStatus(incident.status)
            if new_status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidIncidentTransition(
                    f"Incident {incident_id} cannot move from {current.value} to {new_status.value}"
                )

            now = datetime.now(timezone.utc)
            incident.history.append(IncidentStatusChange(
                incident_id=incident.id,
                from_status=current.value,
                to_status=new_status.value,
                resolution=resolution,
                changed_at=now,
            ))
            incident.status = new_status.value
            incident.updated_at = now
            await session.commit()

        details = {
            "incident_id": incident_id,
            "previous_status": current.value,
            "new_status": new_status.value,
        }
        if resolution:
            details["resolution"] = resolution
        await self.audit.log(
            AuditEvent.INCIDENT_STATUS_CHANGED, details, Severity.INFO, subject_id=incident_id,
        )
        logger.info(
            "Incident %s status %s -> %s", incident_id, current.value, new_status.value,
            extra={"incident_id": incident_id},
        )
        return incident

    async def get_incident(self, incident_id: str):
        from billing_sentinel.models.incident import Incident

        async with self.session_factory() as session:
            incident = await session.get(Incident, incident_id)
        if incident is None:
            raise IncidentNotFound(incident_id)
        return incident

    async def escalate_audit_entry(self, entry: AuditEntry):
        """Escalation hook for critical audit entries (see AuditLogger.set_escalation_hook)."""
        incident_type = _ESCALATION_TYPES.get(entry.event, IncidentType.SYSTEM_FAILURE)
        reason = (
            entry.details.get("reason")
            or entry.details.get("error")
            or f"Critical audit event: {entry.event.value}"
        )
        return await self.report_emergency(
            incident_type,
            host=entry.details.get("host") or self.host,
            reason=str(reason),
            emergency_code=entry.id,
            details={**entry.details, "audit_entry_id": entry.id, "audit_event": entry.event.value},
        )

    async def _open_ticket(self, **fields):
        """
        Local ticket: incident row plus the first history row, one transaction.
        Returns (incident, store_error); the incident is unpersisted when the write failed.
        """
        from billing_sentinel.models.incident import Incident, IncidentStatusChange, new_incident_id

        now = datetime.now(timezone.utc)
        incident = Incident(
            id=new_incident_id(),
            status=IncidentStatus.REPORTED.value,
            created_at=now,
            updated_at=now,
            history=[IncidentStatusChange(
                from_status=None,
                to_status=IncidentStatus.REPORTED.value,
                changed_at=now,
            )],
            **fields,
        )
        try:
            async with self.session_factory() as session:
                session.add(incident)
                await session.commit()
        except Exception as e:
            logger.error(
                "Incident %s could not be stored: %s", incident.id, str(e),
                extra={"incident_id": incident.id},
            )
            return incident, e
        return incident, None

    def _fan_out(self, message: NotificationMessage, channels: list[NotificationChannel]) -> None:
        for channel in channels:
            self.background.spawn(
                self._send_isolated(channel, message),
                name=f"notify-{channel.name}-{message.incident_id}",
            )

    async def _send_isolated(
        self, channel: NotificationChannel, message: NotificationMessage
    ) -> ChannelResult:
        try:
            result = await asyncio.wait_for(channel.send(message), timeout=self.channel_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Notification via %s timed out after %.1fs", channel.name, self.channel_timeout,
                extra={"channel": channel.name, "incident_id": message.incident_id},
            )
            result = ChannelResult(channel=channel.name, delivered=False, error="timeout")
        except Exception as e:
            logger.error(
                "Notification via %s raised: %s", channel.name, str(e),
                extra={"channel": channel.name, "incident_id": message.incident_id},
            )
            result = ChannelResult(channel=channel.name, delivered=False, error=str(e))
        self.deliveries.append((message.incident_id, result))
        return result

    async def _notify_authorities(self, message: NotificationMessage, authorities: list[str]) -> None:
        if self.authority_channel is not None:
            result = await self._send_isolated(self.authority_channel, message)
        else:
            logger.critical(
                "Authority notification required for incident %s (%s) - no authority channel configured",
                message.incident_id, ", ".join(authorities),
                extra={"incident_id": message.incident_id},
            )
            result = ChannelResult(channel="authorities", delivered=False, error="not_configured")
            self.deliveries.append((message.incident_id, result))

        await self.audit.log(
            AuditEvent.AUTHORITIES_NOTIFIED,
            {
                "incident_id": message.incident_id,
                "authorities": authorities,
                "delivered": result.delivered,
                "error": result.error,
            },
            Severity.CRITICAL,
            subject_id=message.incident_id,
        )

    async def drain(self, timeout: Optional[float] = None) -> None:
        await self.background.drain(timeout)
