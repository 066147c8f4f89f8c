"""
Admin API - audit trail, incidents, key audit. Requires X-Admin-Token.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query

from billing_sentinel.api.deps import require_admin
from billing_sentinel.exceptions import IncidentNotFound, InvalidIncidentTransition
from billing_sentinel.schemas.api_responses import (
    AuditEntrySummary,
    AuditRecentResponse,
    IncidentDetail,
    IncidentStatusChangeDetail,
    KeyAuditResponse,
    ReportEmergencyRequest,
    ReportIncidentRequest,
    UpdateIncidentStatusRequest,
)
from billing_sentinel.services.container import Services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["admin"])


def _incident_detail(incident) -> IncidentDetail:
    return IncidentDetail(
        id=incident.id,
        incident_type=incident.incident_type,
        host=incident.host,
        severity=incident.severity,
        status=incident.status,
        details=incident.details,
        is_emergency=incident.is_emergency,
        emergency_code=incident.emergency_code,
        authorities_notified=incident.authorities_notified,
        created_at=incident.created_at,
        updated_at=incident.updated_at,
        history=[
            IncidentStatusChangeDetail(
                from_status=h.from_status,
                to_status=h.to_status,
                resolution=h.resolution,
                changed_at=h.changed_at,
            )
            for h in incident.history
        ],
    )


@router.get("/audit/recent", response_model=AuditRecentResponse)
async def recent_audit_entries(
    limit: int = Query(50, ge=1, le=100),
    services: Services = Depends(require_admin),
):
    """Newest-first presentation history."""
    entries = services.audit.recent(limit)
    return AuditRecentResponse(
        entries=[
            AuditEntrySummary(
                id=e.id,
                timestamp=e.timestamp,
                event=e.event.value,
                severity=e.severity.value,
                subject_id=e.subject_id,
                details=e.details,
            )
            for e in entries
        ],
        total=len(entries),
    )


@router.post("/incidents", response_model=IncidentDetail, status_code=201)
async def report_incident(
    payload: ReportIncidentRequest,
    services: Services = Depends(require_admin),
):
    try:
        incident = await services.incidents.report_incident(
            payload.incident_type, payload.host, payload.severity, payload.details,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _incident_detail(incident)


@router.post("/incidents/emergency", response_model=IncidentDetail, status_code=201)
async def report_emergency(
    payload: ReportEmergencyRequest,
    services: Services = Depends(require_admin),
):
    try:
        incident = await services.incidents.report_emergency(
            payload.incident_type, payload.host, payload.reason, payload.emergency_code,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _incident_detail(incident)


@router.patch("/incidents/{incident_id}/status", response_model=IncidentDetail)
async def update_incident_status(
    incident_id: str,
    payload: UpdateIncidentStatusRequest,
    services: Services = Depends(require_admin),
):
    try:
        incident = await services.incidents.update_incident_status(
            incident_id, payload.status, payload.resolution,
        )
    except IncidentNotFound:
        raise HTTPException(status_code=404, detail="Incident not found")
    except InvalidIncidentTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _incident_detail(incident)


@router.get("/incidents/{incident_id}", response_model=IncidentDetail)
async def get_incident(
    incident_id: str,
    services: Services = Depends(require_admin),
):
    try:
        incident = await services.incidents.get_incident(incident_id)
    except IncidentNotFound:
        raise HTTPException(status_code=404, detail="Incident not found")
    return _incident_detail(incident)


@router.get("/keys/audit", response_model=KeyAuditResponse)
async def key_security_audit(services: Services = Depends(require_admin)):
    """Presence/format audit of every Stripe key slot. Fingerprints only."""
    report = await services.keys.perform_security_audit()
    return KeyAuditResponse(**report.as_dict())
