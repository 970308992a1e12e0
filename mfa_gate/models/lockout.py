from sqlalchemy import Column, DateTime, Integer, String

from mfa_gate.core.time import utcnow
from mfa_gate.db.base import Base


class LockoutRecord(Base):
    __tablename__ = "mfa_lockouts"

    principal_id = Column(String(128), primary_key=True)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    locked_until_utc = Column(DateTime(timezone=True), nullable=True)
    last_failure_at_utc = Column(DateTime(timezone=True), nullable=True)
    updated_at_utc = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
