"""
Audit logger - tiered, append-only security audit trail.

Tiers by severity:
- high/critical: encrypted high-assurance table (audit_entries), plus one
  synchronous real-time alert per entry
- everything else: general in-memory store capped at AUDIT_BUFFER_CAPACITY

Every entry also lands in the presentation history (AUDIT_HISTORY_CAPACITY) and
is mirrored best-effort to the remote collector. Critical entries escalate to
the incident manager through an injected hook.

log() never raises. Persistence, mirror and escalation failures are logged
with the module logger and stay internal.
"""
import asyncio
import json
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional, Union

from billing_sentinel.schemas.audit import AuditEntry, AuditEvent, Severity
from billing_sentinel.utils.alerting import RealtimeAlerter
from billing_sentinel.utils.logging import get_correlation_id
from billing_sentinel.utils.redaction import redact_details
from billing_sentinel.utils.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

EscalationHook = Callable[[AuditEntry], Awaitable[Any]]

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class AuditLogger:
    """Constructed once at startup and injected wherever audit entries are written."""

    def __init__(
        self,
        settings=None,
        session_factory=None,
        alerter: Optional[RealtimeAlerter] = None,
        fernet=None,
        background: Optional[BackgroundTasks] = None,
    ):
        if settings is None:
            from billing_sentinel.config import get_settings
            settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory
        self.alerter = alerter or RealtimeAlerter()
        self._fernet = fernet
        self.background = background or BackgroundTasks("audit")

        self._lock = asyncio.Lock()
        self._general: deque[AuditEntry] = deque(maxlen=settings.audit_buffer_capacity)
        self._history: deque[AuditEntry] = deque(maxlen=settings.audit_history_capacity)
        self._escalation_hook: Optional[EscalationHook] = None

    def set_escalation_hook(self, hook: Optional[EscalationHook]) -> None:
        """Register the coroutine called (in the background) for critical entries."""
        self._escalation_hook = hook

    async def log(
        self,
        event: Union[AuditEvent, str],
        details: Optional[dict] = None,
        severity: Union[Severity, str] = Severity.INFO,
        subject_id: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        """
        Record one audit entry. Returns the entry, or None if it could not be built.
        Never raises.
        """
        try:
            entry = self._build_entry(event, details, severity, subject_id)
        except Exception as e:
            logger.error("Audit entry rejected (%s): %s", event, str(e))
            return None

        logger.log(
            _LOG_LEVELS[entry.severity],
            "audit %s severity=%s subject=%s",
            entry.event.value, entry.severity.value, entry.subject_id or "-",
            extra={"severity": entry.severity.value},
        )

        stored_high = False
        if entry.severity.is_high_assurance:
            stored_high = await self._persist_high_assurance(entry)

        async with self._lock:
            self._history.append(entry)
            if not stored_high:
                self._general.append(entry)

        if entry.severity.is_high_assurance:
            try:
                self.alerter.alert(
                    entry.event.value,
                    entry.severity.value,
                    entry.id,
                    summary=entry.details.get("reason") or entry.details.get("message"),
                )
            except Exception as e:
                logger.error("Real-time alert failed for audit entry %s: %s", entry.id, str(e))

        if self.settings.audit_remote_url:
            self.background.spawn(self._mirror(entry), name=f"audit-mirror-{entry.id}")

        if (
            entry.severity == Severity.CRITICAL
            and not entry.event.is_incident_lifecycle
            and self._escalation_hook is not None
        ):
            self.background.spawn(self._escalate(entry), name=f"audit-escalate-{entry.id}")

        return entry

    def _build_entry(self, event, details, severity, subject_id) -> AuditEntry:
        event = AuditEvent(event)
        severity = Severity(severity)

        merged: dict[str, Any] = dict(details or {})
        merged.setdefault("environment", self.settings.app_env)
        cid = get_correlation_id()
        if cid:
            merged.setdefault("correlation_id", cid)
        if subject_id:
            merged.setdefault("subject_id", subject_id)

        return AuditEntry(
            event=event,
            severity=severity,
            details=redact_details(merged),
            subject_id=subject_id,
            app_version=self.settings.app_version,
            build_number=self.settings.build_number,
            platform=self.settings.platform,
        )

    def _get_fernet(self):
        if self._fernet is None:
            from billing_sentinel.utils.encryption import get_fernet
            self._fernet = get_fernet()
        return self._fernet

    async def _persist_high_assurance(self, entry: AuditEntry) -> bool:
        """Write to the encrypted audit table. False means the entry fell back to the general store."""
        if self.session_factory is None:
            logger.warning(
                "No high-assurance audit store configured - entry %s kept in general store",
                entry.id,
            )
            return False

        try:
            from billing_sentinel.models.audit_record import AuditRecord

            token = self._get_fernet().encrypt(
                json.dumps(entry.details, default=str, sort_keys=True).encode()
            ).decode()
            async with self.session_factory() as session:
                session.add(AuditRecord(
                    id=entry.id,
                    created_at=entry.timestamp,
                    event=entry.event.value,
                    severity=entry.severity.value,
                    subject_id=entry.subject_id,
                    correlation_id=entry.details.get("correlation_id"),
                    app_version=entry.app_version,
                    details_encrypted=token,
                ))
                await session.commit()
            return True
        except Exception as e:
            logger.error(
                "High-assurance audit write failed for %s (%s): %s",
                entry.id, entry.event.value, str(e),
            )
            return False

    async def _mirror(self, entry: AuditEntry) -> None:
        """POST the entry to the remote collector. Best effort, no retry."""
        import httpx

        url = f"{self.settings.audit_remote_url.rstrip('/')}/audit/logs"
        try:
            async with httpx.AsyncClient(timeout=self.settings.audit_remote_timeout_seconds) as client:
                response = await client.post(url, json=entry.to_remote_payload())
                response.raise_for_status()
        except Exception as e:
            logger.warning("Remote audit mirror failed for %s: %s", entry.id, str(e))

    async def _escalate(self, entry: AuditEntry) -> None:
        try:
            await self._escalation_hook(entry)
        except Exception as e:
            logger.error("Escalation of audit entry %s failed: %s", entry.id, str(e))

    # --- Convenience helpers ---

    async def log_unauthorized_access(
        self, resource: str, subject_id: Optional[str] = None, **details
    ) -> Optional[AuditEntry]:
        return await self.log(
            AuditEvent.UNAUTHORIZED_ACCESS,
            {**details, "resource": resource},
            Severity.CRITICAL,
            subject_id,
        )

    async def log_authentication_failure(
        self, reason: str, subject_id: Optional[str] = None, **details
    ) -> Optional[AuditEntry]:
        return await self.log(
            AuditEvent.LOGIN_FAILURE,
            {**details, "reason": reason},
            Severity.WARNING,
            subject_id,
        )

    async def log_sensitive_data_access(
        self, data_type: str, subject_id: Optional[str] = None, **details
    ) -> Optional[AuditEntry]:
        return await self.log(
            AuditEvent.SENSITIVE_DATA_ACCESS,
            {"data_type": data_type, **details},
            Severity.INFO,
            subject_id,
        )

    # --- Read side ---

    def recent(self, limit: int = 50) -> list[AuditEntry]:
        """Newest-first slice of the presentation history."""
        return list(reversed(self._history))[:limit]

    def general_entries(self) -> list[AuditEntry]:
        """Oldest-first snapshot of the general store."""
        return list(self._general)

    async def high_assurance_entries(self, limit: int = 50) -> list[AuditEntry]:
        """Read back and decrypt the newest high-assurance entries."""
        if self.session_factory is None:
            return []

        from sqlalchemy import select
        from billing_sentinel.models.audit_record import AuditRecord

        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditRecord).order_by(AuditRecord.created_at.desc()).limit(limit)
            )
            records = result.scalars().all()

        fernet = self._get_fernet()
        entries = []
        for record in records:
            details = json.loads(fernet.decrypt(record.details_encrypted.encode()))
            entries.append(AuditEntry(
                id=record.id,
                timestamp=record.created_at,
                event=record.event,
                severity=record.severity,
                details=details,
                subject_id=record.subject_id,
                app_version=record.app_version,
            ))
        return entries

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for pending mirror and escalation tasks."""
        await self.background.drain(timeout)
