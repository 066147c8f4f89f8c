"""
API request/response schemas for the webhook and admin endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    received: bool
    status: str


class AuditEntrySummary(BaseModel):
    id: str
    timestamp: datetime
    event: str
    severity: str
    subject_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditRecentResponse(BaseModel):
    entries: list[AuditEntrySummary]
    total: int


class ReportIncidentRequest(BaseModel):
    incident_type: str
    host: str
    severity: str = "high"
    details: Optional[dict[str, Any]] = None


class ReportEmergencyRequest(BaseModel):
    incident_type: str
    host: str
    reason: str
    emergency_code: str


class UpdateIncidentStatusRequest(BaseModel):
    status: str
    resolution: Optional[str] = None


class IncidentStatusChangeDetail(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    resolution: Optional[str] = None
    changed_at: datetime


class IncidentDetail(BaseModel):
    id: str
    incident_type: str
    host: str
    severity: str
    status: str
    details: Optional[dict[str, Any]] = None
    is_emergency: bool = False
    emergency_code: Optional[str] = None
    authorities_notified: bool = False
    created_at: datetime
    updated_at: datetime
    history: list[IncidentStatusChangeDetail] = Field(default_factory=list)


class KeyAuditResponse(BaseModel):
    environment: str
    valid_keys: list[str]
    invalid_keys: list[str]
    missing_keys: list[str]
    warnings: list[str]
    is_secure: bool
