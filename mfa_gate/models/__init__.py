from .credential import BackupCode, TOTPCredential
from .lockout import LockoutRecord
from .mfa_session import MFASession
from .bypass import EmergencyBypassGrant
from .audit import AuditEvent

__all__ = [
    "TOTPCredential",
    "BackupCode",
    "LockoutRecord",
    "MFASession",
    "EmergencyBypassGrant",
    "AuditEvent",
]
