"""
Storage-independent records exchanged between the services and the
credential store. Every store backend reads and writes exactly these shapes.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class SessionSource(str, enum.Enum):
    PRIMARY_STORE = "PrimaryStore"
    CACHED_FALLBACK = "CachedFallback"


class VerificationMethod(str, enum.Enum):
    TOTP = "totp"
    BACKUP_CODE = "backup_code"


class VerificationReason(str, enum.Enum):
    OK = "OK"
    INVALID_CODE = "INVALID_CODE"
    LOCKED = "LOCKED"


class DecisionOutcome(str, enum.Enum):
    ALLOW = "Allow"
    CHALLENGE_REQUIRED = "ChallengeRequired"
    DENIED = "Denied"


class ChallengeMode(str, enum.Enum):
    ENROLLMENT = "Enrollment"
    ENROLLMENT_CONFIRMATION = "EnrollmentConfirmation"
    VERIFICATION = "Verification"


class AllowedVia(str, enum.Enum):
    NOT_MANDATORY = "NotMandatory"
    BYPASS = "Bypass"
    SESSION = "Session"


@dataclass
class BackupCodeRecord:
    id: str
    code_hash: str
    consumed_at: Optional[datetime] = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass
class CredentialRecord:
    principal_id: str
    secret_encrypted: str
    enrolled_at: datetime
    confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    last_used_step: Optional[int] = None
    backup_codes: List[BackupCodeRecord] = field(default_factory=list)

    @property
    def usable_backup_codes(self) -> List[BackupCodeRecord]:
        return [c for c in self.backup_codes if not c.consumed]

    @property
    def consumed_backup_codes(self) -> List[BackupCodeRecord]:
        return [c for c in self.backup_codes if c.consumed]


@dataclass
class LockoutState:
    principal_id: str
    consecutive_failures: int = 0
    locked_until: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


@dataclass
class SessionRecord:
    id: str
    principal_id: str
    device_fingerprint: str
    issued_at: datetime
    expires_at: datetime
    verified: bool = True
    source_of_truth: SessionSource = SessionSource.PRIMARY_STORE

    def is_valid(self, now: datetime) -> bool:
        return self.verified and now < self.expires_at


@dataclass
class BypassGrantRecord:
    principal_id: str
    granted_at: datetime
    expires_at: datetime
    reason: str
    granted_by: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class AuditRecord:
    id: str
    at: datetime
    kind: str
    principal_id: Optional[str]
    outcome: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CleanupReport:
    sessions: int = 0
    bypass_grants: int = 0
    lockouts: int = 0
    pending_credentials: int = 0
