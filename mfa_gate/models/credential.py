import uuid

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from mfa_gate.core.time import utcnow
from mfa_gate.db.base import Base


class TOTPCredential(Base):
    __tablename__ = "mfa_credentials"

    principal_id = Column(String(128), primary_key=True)
    secret_encrypted = Column(Text, nullable=False)
    confirmed = Column(Boolean, default=False, nullable=False)
    enrolled_at_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    confirmed_at_utc = Column(DateTime(timezone=True), nullable=True)
    # highest TOTP time step accepted so far; replay guard
    last_used_step = Column(BigInteger, nullable=True)

    backup_codes = relationship(
        "BackupCode",
        back_populates="credential",
        cascade="all, delete-orphan",
        order_by="BackupCode.created_at_utc",
    )


class BackupCode(Base):
    __tablename__ = "mfa_backup_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    principal_id = Column(
        String(128), ForeignKey("mfa_credentials.principal_id", ondelete="CASCADE"), nullable=False, index=True
    )
    code_hash = Column(String(255), nullable=False)
    consumed_at_utc = Column(DateTime(timezone=True), nullable=True)
    created_at_utc = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    credential = relationship("TOTPCredential", back_populates="backup_codes")
