"""
Security incidents and their append-only status history.

The incident row carries the current status as a projection; every change is
also written as a new IncidentStatusChange row. History rows are never updated.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from billing_sentinel.database import Base


def new_incident_id() -> str:
    return f"inc_{uuid.uuid4().hex}"


class Incident(Base):
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=new_incident_id)
    incident_type: Mapped[str] = mapped_column(String(50), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="reported"
    )  # reported, investigating, resolved, ignored
    details: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Emergency escalation
    is_emergency: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    emergency_code: Mapped[Optional[str]] = mapped_column(String(64))
    authorities_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    history: Mapped[list["IncidentStatusChange"]] = relationship(
        back_populates="incident",
        order_by="IncidentStatusChange.changed_at",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_incidents_status", "status"),
        Index("ix_incidents_type", "incident_type"),
        Index("ix_incidents_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Incident {self.id} {self.incident_type} status={self.status}>"


class IncidentStatusChange(Base):
    __tablename__ = "incident_status_changes"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    incident_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("incidents.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    resolution: Mapped[Optional[str]] = mapped_column(Text)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    incident: Mapped["Incident"] = relationship(back_populates="history")

    __table_args__ = (
        Index("ix_incident_status_changes_incident_id", "incident_id"),
    )
