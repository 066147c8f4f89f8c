"""
High-assurance audit store - high and critical audit entries only.
Details are Fernet-encrypted at rest; rows are never updated or deleted by the app.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column
from billing_sentinel.database import Base


class AuditRecord(Base):
    __tablename__ = "audit_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    subject_id: Mapped[Optional[str]] = mapped_column(String(128))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))
    app_version: Mapped[Optional[str]] = mapped_column(String(32))

    # Fernet token of the JSON-encoded details map
    details_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("ix_audit_entries_created_at", "created_at"),
        Index("ix_audit_entries_event", "event"),
        Index("ix_audit_entries_severity", "severity"),
        Index("ix_audit_entries_subject_id", "subject_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditRecord {self.event} severity={self.severity}>"
