import uuid

from sqlalchemy import Boolean, Column, DateTime, String, UniqueConstraint

from mfa_gate.core.time import utcnow
from mfa_gate.db.base import Base


class MFASession(Base):
    __tablename__ = "mfa_sessions"
    __table_args__ = (UniqueConstraint("principal_id", "device_fingerprint", name="uq_mfa_session_device"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    principal_id = Column(String(128), nullable=False, index=True)
    device_fingerprint = Column(String(255), nullable=False)
    verified = Column(Boolean, default=True, nullable=False)
    issued_at_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at_utc = Column(DateTime(timezone=True), nullable=False)
