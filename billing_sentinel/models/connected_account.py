"""
Connected (Stripe Connect) accounts of professionals - cached capability flags.
Refreshed on account.updated, deactivated on account.application.deauthorized.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, DateTime, true
from billing_sentinel.database import Base


class ConnectedAccount(Base):
    __tablename__ = "connected_accounts"

    account_id = Column(String(64), primary_key=True)
    charges_enabled = Column(Boolean, nullable=False, default=False)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    refreshed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
