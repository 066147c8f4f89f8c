"""
Audit trail schemas - severity tiers, event kinds, and the audit entry itself.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def is_high_assurance(self) -> bool:
        """High and critical entries go to the encrypted store and raise a real-time alert."""
        return self in (Severity.HIGH, Severity.CRITICAL)


class AuditEvent(str, Enum):
    """Closed set of audit event kinds."""
    # Authentication / access
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SENSITIVE_DATA_ACCESS = "sensitive_data_access"

    # Webhook boundary
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    WEBHOOK_TIMESTAMP_INVALID = "webhook_timestamp_invalid"
    WEBHOOK_MALFORMED = "webhook_malformed"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_ENQUEUE_FAILED = "webhook_enqueue_failed"
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_FAILED = "webhook_failed"
    WEBHOOK_IGNORED = "webhook_ignored"
    WEBHOOK_RETRIES_EXHAUSTED = "webhook_retries_exhausted"

    # Payments
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    DISPUTE_CREATED = "dispute_created"

    # Key material
    KEY_STORED = "key_stored"
    KEY_ACCESSED = "key_accessed"
    KEY_REMOVED = "key_removed"
    KEY_VALIDATION_FAILED = "key_validation_failed"
    KEY_AUDIT_COMPLETED = "key_audit_completed"

    # Incidents
    INCIDENT_REPORTED = "incident_reported"
    EMERGENCY_REPORTED = "emergency_reported"
    INCIDENT_STATUS_CHANGED = "incident_status_changed"
    AUTHORITIES_NOTIFIED = "authorities_notified"

    # Device posture (reported by clients through the incident API)
    JAILBREAK_DETECTED = "jailbreak_detected"
    CERTIFICATE_PINNING_FAILED = "certificate_pinning_failed"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"

    @property
    def is_incident_lifecycle(self) -> bool:
        return self in _INCIDENT_LIFECYCLE_EVENTS


_INCIDENT_LIFECYCLE_EVENTS = frozenset({
    AuditEvent.INCIDENT_REPORTED,
    AuditEvent.EMERGENCY_REPORTED,
    AuditEvent.INCIDENT_STATUS_CHANGED,
    AuditEvent.AUTHORITIES_NOTIFIED,
})


class AuditEntry(BaseModel):
    """One audit trail record. Immutable once created."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event: AuditEvent
    severity: Severity
    details: dict[str, Any] = Field(default_factory=dict)
    subject_id: Optional[str] = None
    app_version: Optional[str] = None
    build_number: Optional[str] = None
    platform: Optional[str] = None

    model_config = {"frozen": True}

    def to_remote_payload(self) -> dict:
        """Body of POST /audit/logs on the remote collector."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "event": self.event.value,
            "details": self.details,
            "severity": self.severity.value,
            "subjectId": self.subject_id,
            "appVersion": self.app_version,
            "platform": self.platform,
        }
