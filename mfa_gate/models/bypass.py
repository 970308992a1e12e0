from sqlalchemy import Column, DateTime, String, Text

from mfa_gate.core.time import utcnow
from mfa_gate.db.base import Base


class EmergencyBypassGrant(Base):
    __tablename__ = "mfa_bypass_grants"

    principal_id = Column(String(128), primary_key=True)
    granted_at_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at_utc = Column(DateTime(timezone=True), nullable=False)
    reason = Column(Text, nullable=False)
    granted_by = Column(String(128), nullable=True)
