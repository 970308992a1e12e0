"""
Enrollment Manager
==================

Creates TOTP credentials, confirms them with a first correct code, and
manages the backup code set. The plaintext secret and backup codes are only
ever returned from begin_enrollment / regenerate_backup_codes; the store keeps
the Fernet-encrypted secret and pbkdf2 hashes.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from mfa_gate.core import mfa
from mfa_gate.core.config import Settings
from mfa_gate.core.encryption import encrypt_secret
from mfa_gate.core.errors import AlreadyEnrolled, NotEnrolled
from mfa_gate.core.time import Clock, utcnow
from mfa_gate.schemas.records import BackupCodeRecord, CredentialRecord

from .audit_service import AuditKind, AuditOutcome, AuditSink
from .credential_store import CredentialStore
from .session_service import SessionLifecycleManager
from .verification_service import VerificationEngine, VerificationPurpose, VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentStart:
    principal_id: str
    secret: str
    provisioning_uri: str
    qr_png_base64: str
    backup_codes: List[str] = field(default_factory=list)
    replaced: bool = False


class EnrollmentManager:
    def __init__(
        self,
        store: CredentialStore,
        verifier: VerificationEngine,
        sessions: SessionLifecycleManager,
        audit: AuditSink,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.verifier = verifier
        self.sessions = sessions
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def begin_enrollment(
        self, principal_id: str, account_name: Optional[str] = None, replace: bool = False
    ) -> EnrollmentStart:
        """
        Generate a new secret and backup code set for the principal.

        A pending (unconfirmed) credential is silently replaced. A confirmed
        one is only replaced with replace=True, and doing so ends every MFA
        session of the principal.

        Raises:
            AlreadyEnrolled: a confirmed credential exists and replace is False
        """
        now = self.clock()
        secret = mfa.generate_totp_secret()
        codes = mfa.generate_backup_codes()
        record = CredentialRecord(
            principal_id=principal_id,
            secret_encrypted=encrypt_secret(secret),
            enrolled_at=now,
            backup_codes=[
                BackupCodeRecord(id=str(uuid.uuid4()), code_hash=mfa.hash_backup_code(c)) for c in codes
            ],
        )
        previous = self.store.put_credential(record, replace_confirmed=replace)
        replaced = previous is not None and previous.confirmed

        if replaced:
            logger.warning(f"Confirmed MFA credential for {principal_id} replaced by a new enrollment")
            self.audit.record_audit_event(
                AuditKind.ENROLLMENT_REPLACED,
                principal_id,
                AuditOutcome.INFO,
                {"previous_confirmed_at": previous.confirmed_at.isoformat() if previous.confirmed_at else None},
            )
            self.sessions.invalidate_all(principal_id, reason="credential_replaced")

        self.audit.record_audit_event(
            AuditKind.ENROLLMENT_STARTED,
            principal_id,
            AuditOutcome.SUCCESS,
            {
                "replaced_confirmed": replaced,
                "replaced_pending": previous is not None and not previous.confirmed,
                "backup_codes": len(codes),
            },
        )

        uri = mfa.provisioning_uri(secret, account_name or principal_id)
        return EnrollmentStart(
            principal_id=principal_id,
            secret=secret,
            provisioning_uri=uri,
            qr_png_base64=mfa.build_qr_png_base64(uri),
            backup_codes=codes,
            replaced=replaced,
        )

    def confirm_enrollment(self, principal_id: str, code: str) -> VerificationResult:
        """
        Confirm a pending credential with a TOTP code.

        Failures never count towards the lockout; backup codes cannot confirm.

        Raises:
            NotEnrolled: nothing to confirm
            AlreadyEnrolled: the credential is already confirmed
        """
        credential = self.store.get_credential(principal_id)
        if credential is None:
            raise NotEnrolled()
        if credential.confirmed:
            raise AlreadyEnrolled("MFA enrollment is already confirmed")
        return self.verifier.verify_code(
            principal_id,
            code,
            consume_lockout_budget=False,
            purpose=VerificationPurpose.ENROLLMENT,
        )

    def regenerate_backup_codes(self, principal_id: str, actor: Optional[str] = None) -> List[str]:
        """Replace the whole backup code set; every earlier code stops working."""
        credential = self.store.get_credential(principal_id)
        if credential is None or not credential.confirmed:
            raise NotEnrolled()
        codes = mfa.generate_backup_codes()
        self.store.replace_backup_codes(principal_id, [mfa.hash_backup_code(c) for c in codes], self.clock())
        self.audit.record_audit_event(
            AuditKind.BACKUP_CODES_REGENERATED,
            principal_id,
            AuditOutcome.SUCCESS,
            {"count": len(codes), "actor": actor or principal_id},
        )
        return codes

    def remaining_backup_codes(self, principal_id: str) -> int:
        credential = self.store.get_credential(principal_id)
        if credential is None:
            raise NotEnrolled()
        return len(credential.usable_backup_codes)

    def reset_credential(self, principal_id: str, actor: Optional[str] = None) -> bool:
        """
        Remove the credential, its backup codes, the lockout record and all
        sessions. The principal enrolls from scratch afterwards; this is the
        recovery path for an unreadable secret.
        """
        removed = self.store.delete_credential(principal_id)
        self.store.reset_lockout(principal_id)
        sessions_removed = self.sessions.invalidate_all(principal_id, reason="credential_reset", actor=actor)
        logger.warning(f"MFA credential for {principal_id} reset by {actor}")
        self.audit.record_audit_event(
            AuditKind.CREDENTIAL_RESET,
            principal_id,
            AuditOutcome.INFO,
            {"actor": actor, "credential_removed": removed, "sessions_removed": sessions_removed},
        )
        return removed
