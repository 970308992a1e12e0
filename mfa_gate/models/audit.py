import uuid

from sqlalchemy import Column, DateTime, String, Text

from mfa_gate.core.time import utcnow
from mfa_gate.db.base import Base


class AuditEvent(Base):
    """Append-only; rows are never updated or deleted by the gate."""

    __tablename__ = "mfa_audit_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    at_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    kind = Column(String(64), nullable=False, index=True)
    principal_id = Column(String(128), nullable=True, index=True)
    outcome = Column(String(32), nullable=False)
    details = Column(Text, nullable=True)
