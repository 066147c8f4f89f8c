"""
Database models - import all models here so Alembic can discover them.
"""
from billing_sentinel.models.audit_record import AuditRecord
from billing_sentinel.models.incident import Incident, IncidentStatusChange
from billing_sentinel.models.connected_account import ConnectedAccount

__all__ = [
    "AuditRecord",
    "Incident",
    "IncidentStatusChange",
    "ConnectedAccount",
]
