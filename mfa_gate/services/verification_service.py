"""
Verification Engine
===================

Validates submitted codes against a stored credential:

1. an active lockout short-circuits before the credential is read
2. backup-code shaped input is matched against every unused hash and then
   consumed with an atomic test-and-remove
3. anything else is treated as a TOTP value, accepted for the current step
   and one step either side, and only if that step is newer than the last
   accepted one (replay guard)

Callers only ever learn "invalid code"; why a code was rejected (wrong,
outside the window, replayed, already-used backup code) is kept for the audit
trail.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from mfa_gate.core import mfa
from mfa_gate.core.config import Settings
from mfa_gate.core.encryption import decrypt_secret
from mfa_gate.core.errors import CredentialCorrupted, InvalidCode, Locked, NotEnrolled
from mfa_gate.core.time import Clock, utcnow
from mfa_gate.schemas.records import CredentialRecord, VerificationMethod, VerificationReason

from .audit_service import AuditKind, AuditOutcome, AuditSink
from .credential_store import CredentialStore
from .lockout_service import LockoutTracker
from .session_service import IssuedSession

logger = logging.getLogger(__name__)


class VerificationPurpose(str, enum.Enum):
    CHALLENGE = "challenge"
    ENROLLMENT = "enrollment"


@dataclass
class VerificationResult:
    success: bool
    reason: VerificationReason
    method: Optional[VerificationMethod] = None
    locked_until: Optional[datetime] = None
    remaining_attempts: Optional[int] = None
    backup_codes_remaining: Optional[int] = None
    checked_at: Optional[datetime] = None
    # set by the gate when a successful verification issues a device session
    issued_session: Optional[IssuedSession] = None

    def raise_for_failure(self) -> None:
        """Turn a failed result into the matching MFAError."""
        if self.success:
            return
        if self.reason == VerificationReason.LOCKED:
            raise Locked(self.locked_until, self.checked_at or utcnow())
        details = {}
        if self.remaining_attempts is not None:
            details["remaining_attempts"] = self.remaining_attempts
        if self.locked_until is not None:
            details["locked_until"] = self.locked_until.isoformat()
        raise InvalidCode(details=details)


@dataclass
class _Match:
    method: VerificationMethod
    matched: bool
    detail: Optional[str] = None
    step_offset: Optional[int] = None


class VerificationEngine:
    def __init__(
        self,
        store: CredentialStore,
        lockout: LockoutTracker,
        audit: AuditSink,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.lockout = lockout
        self.audit = audit
        self.settings = settings
        self.clock = clock

    def verify_code(
        self,
        principal_id: str,
        submitted_code: str,
        consume_lockout_budget: bool = True,
        purpose: VerificationPurpose = VerificationPurpose.CHALLENGE,
    ) -> VerificationResult:
        """
        Verify a TOTP or backup code for a principal.

        Args:
            principal_id: Principal identifier
            submitted_code: Code as typed by the user
            consume_lockout_budget: Check the lockout first and count a failure
                against it; False for enrollment confirmation
            purpose: Only changes which audit events are written

        Returns:
            VerificationResult (success, INVALID_CODE or LOCKED)

        Raises:
            NotEnrolled: no credential exists
            CredentialCorrupted: the stored secret cannot be decrypted
            StorageUnavailable: the store could not be reached
        """
        now = self.clock()
        code = (submitted_code or "").strip()

        if consume_lockout_budget:
            status = self.lockout.is_locked(principal_id)
            if status.locked:
                self.audit.record_audit_event(
                    AuditKind.VERIFICATION_BLOCKED,
                    principal_id,
                    AuditOutcome.FAILURE,
                    {"locked_until": status.locked_until.isoformat()},
                )
                return VerificationResult(
                    success=False,
                    reason=VerificationReason.LOCKED,
                    locked_until=status.locked_until,
                    remaining_attempts=0,
                    checked_at=now,
                )

        credential = self.store.get_credential(principal_id)
        if credential is None:
            raise NotEnrolled()

        allow_backup = credential.confirmed and purpose == VerificationPurpose.CHALLENGE
        match = self._match(credential, code, now, allow_backup, purpose)

        if match.matched:
            return self._succeed(credential, match, now, purpose)
        return self._fail(principal_id, match, now, consume_lockout_budget, purpose)

    def _match(
        self,
        credential: CredentialRecord,
        code: str,
        now: datetime,
        allow_backup: bool,
        purpose: VerificationPurpose,
    ) -> _Match:
        principal_id = credential.principal_id

        if allow_backup and mfa.is_backup_code_format(code):
            match_id = None
            for backup in credential.usable_backup_codes:
                # every hash is checked; no early exit on the first hit
                if mfa.verify_backup_code(code, backup.code_hash) and match_id is None:
                    match_id = backup.id
            if match_id is None:
                return _Match(VerificationMethod.BACKUP_CODE, False, "no_matching_backup_code")
            if not self.store.consume_backup_code(principal_id, match_id, now):
                return _Match(VerificationMethod.BACKUP_CODE, False, "backup_code_already_consumed")
            return _Match(VerificationMethod.BACKUP_CODE, True)

        compact = code.replace(" ", "").replace("-", "")
        if not mfa.is_totp_format(compact):
            return _Match(VerificationMethod.TOTP, False, "malformed")

        try:
            secret = decrypt_secret(credential.secret_encrypted)
        except CredentialCorrupted:
            logger.error(f"Stored TOTP secret for {principal_id} could not be decrypted")
            self.audit.record_audit_event(
                AuditKind.ENROLLMENT_CONFIRM_FAILED
                if purpose == VerificationPurpose.ENROLLMENT
                else AuditKind.VERIFICATION_FAILED,
                principal_id,
                AuditOutcome.FAILURE,
                {"method": VerificationMethod.TOTP.value, "detail": "credential_corrupted"},
            )
            raise

        step = mfa.match_totp_step(secret, compact, now)
        if step is None:
            return _Match(VerificationMethod.TOTP, False, "no_match_in_window")
        offset = step - mfa.current_step(now)
        if not self.store.claim_totp_step(principal_id, step):
            return _Match(VerificationMethod.TOTP, False, "replayed", offset)
        return _Match(VerificationMethod.TOTP, True, step_offset=offset)

    def _succeed(
        self, credential: CredentialRecord, match: _Match, now: datetime, purpose: VerificationPurpose
    ) -> VerificationResult:
        principal_id = credential.principal_id
        self.lockout.record_success(principal_id)

        newly_confirmed = False
        if not credential.confirmed:
            newly_confirmed = self.store.set_confirmed(principal_id, now)

        remaining = len(credential.usable_backup_codes)
        if match.method == VerificationMethod.BACKUP_CODE:
            remaining -= 1
            logger.info(f"Backup code consumed for {principal_id}, {remaining} left")

        metadata = {"method": match.method.value, "backup_codes_remaining": remaining}
        if match.step_offset is not None:
            metadata["step_offset"] = match.step_offset
        if newly_confirmed:
            metadata["confirmed"] = True
        kind = (
            AuditKind.ENROLLMENT_CONFIRMED
            if purpose == VerificationPurpose.ENROLLMENT
            else AuditKind.VERIFICATION_SUCCEEDED
        )
        self.audit.record_audit_event(kind, principal_id, AuditOutcome.SUCCESS, metadata)

        return VerificationResult(
            success=True,
            reason=VerificationReason.OK,
            method=match.method,
            backup_codes_remaining=remaining,
            checked_at=now,
        )

    def _fail(
        self,
        principal_id: str,
        match: _Match,
        now: datetime,
        consume_lockout_budget: bool,
        purpose: VerificationPurpose,
    ) -> VerificationResult:
        locked_until = None
        remaining_attempts = None
        failures = None
        if consume_lockout_budget:
            state = self.lockout.record_failure(principal_id)
            failures = state.consecutive_failures
            remaining_attempts = self.lockout.remaining_attempts(state)
            if state.is_locked(now):
                locked_until = state.locked_until

        logger.warning(f"Failed {match.method.value} verification for {principal_id} ({purpose.value})")
        kind = (
            AuditKind.ENROLLMENT_CONFIRM_FAILED
            if purpose == VerificationPurpose.ENROLLMENT
            else AuditKind.VERIFICATION_FAILED
        )
        metadata = {"method": match.method.value, "detail": match.detail}
        if failures is not None:
            metadata["consecutive_failures"] = failures
        self.audit.record_audit_event(kind, principal_id, AuditOutcome.FAILURE, metadata)

        return VerificationResult(
            success=False,
            reason=VerificationReason.INVALID_CODE,
            method=match.method,
            locked_until=locked_until,
            remaining_attempts=remaining_attempts,
            checked_at=now,
        )
