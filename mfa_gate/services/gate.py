"""
MFA Gate facade
===============

The public surface of the subsystem. Wires the credential store, audit sink
and collaborators into the enrollment, verification, lockout, session, bypass
and policy components, and applies the boundary error policy: a
StorageUnavailable is retried once before it is surfaced, except for
operations that generate or consume one-time material (enrollment secrets,
backup codes, TOTP steps), where a partially applied first attempt would make
the retry unsafe.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy.orm import sessionmaker

from mfa_gate.core.config import Settings, get_settings
from mfa_gate.core.errors import StorageUnavailable
from mfa_gate.core.time import Clock, utcnow
from mfa_gate.schemas.records import (
    AuditRecord,
    BypassGrantRecord,
    CleanupReport,
    DecisionOutcome,
    SessionRecord,
)

from .audit_service import AuditKind, AuditOutcome, MemoryAuditSink, SqlAuditSink
from .bypass_service import EmergencyBypassManager
from .collaborators import EmergencyAllowlist, MFAPolicy, SettingsMFAPolicy, StaticAllowlist
from .credential_store import CredentialStore, MemoryCredentialStore
from .enrollment_service import EnrollmentManager, EnrollmentStart
from .lockout_service import LockoutTracker, LockStatus
from .policy_service import AccessPolicyEvaluator, Decision
from .session_service import DeviceStatus, IssuedSession, SessionLifecycleManager
from .sql_store import SqlCredentialStore
from .verification_service import VerificationEngine, VerificationPurpose, VerificationResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MFAStatus:
    """Display summary for one principal on one device."""

    principal_id: str
    mandatory: bool
    enrolled: bool
    confirmed: bool
    backup_codes_remaining: int
    locked: bool
    locked_until: Optional[datetime]
    remaining_attempts: int
    bypass_active: bool
    bypass_expires_at: Optional[datetime]
    session_valid: bool
    session_expires_at: Optional[datetime]
    devices: DeviceStatus


class MFAGate:
    def __init__(
        self,
        store: CredentialStore,
        audit,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        policy: Optional[MFAPolicy] = None,
        allowlist: Optional[EmergencyAllowlist] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.audit = audit
        self.clock = clock
        self.policy = policy or SettingsMFAPolicy(self.settings)
        self.allowlist = allowlist or StaticAllowlist(self.settings.emergency_allowlist)

        self.lockout = LockoutTracker(store, audit, self.settings, clock)
        self.sessions = SessionLifecycleManager(store, audit, self.settings, clock)
        self.verifier = VerificationEngine(store, self.lockout, audit, self.settings, clock)
        self.enrollment = EnrollmentManager(store, self.verifier, self.sessions, audit, self.settings, clock)
        self.bypass = EmergencyBypassManager(store, audit, self.allowlist, self.settings, clock)
        self.evaluator = AccessPolicyEvaluator(store, self.sessions, self.bypass, self.policy)

    def _retry_once(self, operation: Callable[..., T], *args, **kwargs) -> T:
        try:
            return operation(*args, **kwargs)
        except StorageUnavailable:
            logger.warning(f"Storage unavailable during {operation.__name__}, retrying once")
            return operation(*args, **kwargs)

    # enrollment

    def begin_enrollment(
        self, principal_id: str, account_name: Optional[str] = None, replace: bool = False
    ) -> EnrollmentStart:
        return self.enrollment.begin_enrollment(principal_id, account_name=account_name, replace=replace)

    def confirm_enrollment(
        self, principal_id: str, code: str, device_fingerprint: Optional[str] = None
    ) -> VerificationResult:
        """Confirm the pending credential; on success the confirming device gets a session."""
        result = self.enrollment.confirm_enrollment(principal_id, code)
        self._after_verification(principal_id, device_fingerprint, result)
        return result

    def regenerate_backup_codes(self, principal_id: str, actor: Optional[str] = None) -> List[str]:
        return self.enrollment.regenerate_backup_codes(principal_id, actor=actor)

    def remaining_backup_codes(self, principal_id: str) -> int:
        return self._retry_once(self.enrollment.remaining_backup_codes, principal_id)

    def reset_credential(self, principal_id: str, actor: Optional[str] = None) -> bool:
        return self._retry_once(self.enrollment.reset_credential, principal_id, actor=actor)

    # verification

    def verify_code(
        self,
        principal_id: str,
        code: str,
        device_fingerprint: Optional[str] = None,
        consume_lockout_budget: bool = True,
    ) -> VerificationResult:
        """
        Verify a TOTP or backup code and, on success, issue (or refresh) the
        session for device_fingerprint.
        """
        result = self.verifier.verify_code(
            principal_id,
            code,
            consume_lockout_budget=consume_lockout_budget,
            purpose=VerificationPurpose.CHALLENGE,
        )
        self._after_verification(principal_id, device_fingerprint, result)
        return result

    def _after_verification(
        self, principal_id: str, device_fingerprint: Optional[str], result: VerificationResult
    ) -> None:
        if not result.success:
            return
        if device_fingerprint:
            result.issued_session = self.sessions.issue_session(principal_id, device_fingerprint)
        else:
            self.sessions.invalidate_cache(principal_id)

    def lock_status(self, principal_id: str) -> LockStatus:
        return self._retry_once(self.lockout.is_locked, principal_id)

    def unlock(self, principal_id: str, actor: Optional[str] = None) -> bool:
        return self._retry_once(self.lockout.unlock, principal_id, actor=actor)

    # sessions

    def issue_session(self, principal_id: str, device_fingerprint: str) -> IssuedSession:
        return self._retry_once(self.sessions.issue_session, principal_id, device_fingerprint)

    def is_session_valid(self, principal_id: str, device_fingerprint: str) -> bool:
        return self._retry_once(self.sessions.is_session_valid, principal_id, device_fingerprint)

    def list_sessions(self, principal_id: str) -> List[SessionRecord]:
        return self._retry_once(self.sessions.list_sessions, principal_id)

    def device_status(self, principal_id: str) -> DeviceStatus:
        return self._retry_once(self.sessions.device_status, principal_id)

    def session_from_token(self, token: str) -> Optional[SessionRecord]:
        return self._retry_once(self.sessions.session_from_token, token)

    def invalidate_session(self, principal_id: str, device_fingerprint: str, actor: Optional[str] = None) -> bool:
        return self._retry_once(self.sessions.invalidate_session, principal_id, device_fingerprint, actor=actor)

    def invalidate_all(self, principal_id: str, reason: str = "logout", actor: Optional[str] = None) -> int:
        return self._retry_once(self.sessions.invalidate_all, principal_id, reason=reason, actor=actor)

    # bypass

    def grant_bypass(
        self,
        principal_id: str,
        reason: str,
        granted_by: Optional[str] = None,
        duration_hours: Optional[float] = None,
    ) -> BypassGrantRecord:
        return self._retry_once(
            self.bypass.grant_bypass, principal_id, reason, granted_by=granted_by, duration_hours=duration_hours
        )

    def revoke_bypass(self, principal_id: str, actor: Optional[str] = None) -> bool:
        return self._retry_once(self.bypass.revoke_bypass, principal_id, actor=actor)

    def is_bypass_active(self, principal_id: str) -> bool:
        return self._retry_once(self.bypass.is_bypass_active, principal_id)

    # policy

    def decide(
        self, principal_id: str, device_fingerprint: Optional[str], mfa_mandatory: Optional[bool] = None
    ) -> Decision:
        decision = self.evaluator.decide(principal_id, device_fingerprint, mfa_mandatory)
        if decision.outcome == DecisionOutcome.DENIED and decision.reason == "storage_unavailable":
            logger.warning(f"Retrying MFA decision for {principal_id} after a storage failure")
            decision = self.evaluator.decide(principal_id, device_fingerprint, mfa_mandatory)
        return decision

    def mfa_status(self, principal_id: str, device_fingerprint: Optional[str] = None) -> MFAStatus:
        return self._retry_once(self._mfa_status, principal_id, device_fingerprint)

    def _mfa_status(self, principal_id: str, device_fingerprint: Optional[str]) -> MFAStatus:
        credential = self.store.get_credential(principal_id)
        lock = self.lockout.is_locked(principal_id)
        grant = self.bypass.active_grant(principal_id)
        session = self.sessions.check_session(principal_id, device_fingerprint or "")
        return MFAStatus(
            principal_id=principal_id,
            mandatory=self.policy.is_mfa_mandatory(principal_id),
            enrolled=credential is not None,
            confirmed=bool(credential and credential.confirmed),
            backup_codes_remaining=len(credential.usable_backup_codes) if credential else 0,
            locked=lock.locked,
            locked_until=lock.locked_until,
            remaining_attempts=lock.remaining_attempts,
            bypass_active=grant is not None,
            bypass_expires_at=grant.expires_at if grant else None,
            session_valid=session is not None,
            session_expires_at=session.expires_at if session else None,
            devices=self.sessions.device_status(principal_id),
        )

    # maintenance

    def cleanup_expired(self) -> CleanupReport:
        """Purge expired sessions and grants, elapsed lockouts and stale pending enrollments."""
        now = self.clock()
        pending_before = now - timedelta(hours=self.settings.pending_enrollment_ttl_hours)
        report = self._retry_once(self.store.purge_expired, now, pending_before)
        if self.sessions.cache is not None:
            self.sessions.cache.clear()
        logger.info(
            f"Cleanup removed {report.sessions} sessions, {report.bypass_grants} bypass grants, "
            f"{report.lockouts} lockouts, {report.pending_credentials} pending enrollments"
        )
        self.audit.record_audit_event(
            AuditKind.CLEANUP,
            None,
            AuditOutcome.INFO,
            {
                "sessions": report.sessions,
                "bypass_grants": report.bypass_grants,
                "lockouts": report.lockouts,
                "pending_credentials": report.pending_credentials,
            },
        )
        return report

    def list_audit_events(
        self,
        principal_id: Optional[str] = None,
        kind_prefix: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[AuditRecord], int]:
        return self._retry_once(
            self.audit.list_events, principal_id=principal_id, kind_prefix=kind_prefix, page=page, page_size=page_size
        )

    def health(self) -> Dict[str, Any]:
        try:
            self.store.ping()
        except StorageUnavailable:
            return {"status": "degraded", "store": "unavailable"}
        return {"status": "ok", "store": "ok"}


def build_gate(
    settings: Optional[Settings] = None,
    clock: Clock = utcnow,
    session_factory: Optional[sessionmaker] = None,
    policy: Optional[MFAPolicy] = None,
    allowlist: Optional[EmergencyAllowlist] = None,
) -> MFAGate:
    """Assemble a gate on the store backend selected by settings.credential_store."""
    settings = settings or get_settings()
    backend = settings.credential_store.lower()
    if backend == "memory":
        store, audit = MemoryCredentialStore(), MemoryAuditSink(clock)
    elif backend == "sql":
        if session_factory is None:
            from mfa_gate.db.session import SessionLocal

            session_factory = SessionLocal
        store, audit = SqlCredentialStore(session_factory), SqlAuditSink(session_factory, clock)
    else:
        raise ValueError(f"Unknown credential store backend: {settings.credential_store}")
    logger.info(f"MFA gate using the {backend} credential store")
    return MFAGate(store, audit, settings=settings, clock=clock, policy=policy, allowlist=allowlist)
