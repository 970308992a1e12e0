"""
Emergency Bypass Manager
========================

Time-bounded grants that satisfy the MFA gate without a verified code. Only
principals on the out-of-band emergency allowlist can receive one, a grant
never lasts longer than the configured maximum (24h), and every grant, denial,
use, revocation and expiry is written to the audit trail under its own
bypass.* kind.
"""
import logging
from datetime import timedelta
from typing import Optional

from mfa_gate.core.config import Settings
from mfa_gate.core.errors import BypassDenied
from mfa_gate.core.time import Clock, utcnow
from mfa_gate.schemas.records import BypassGrantRecord

from .audit_service import AuditKind, AuditOutcome, AuditSink
from .collaborators import EmergencyAllowlist
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


class EmergencyBypassManager:
    def __init__(
        self,
        store: CredentialStore,
        audit: AuditSink,
        allowlist: EmergencyAllowlist,
        settings: Settings,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.allowlist = allowlist
        self.clock = clock
        self.max_duration = timedelta(hours=settings.bypass_max_hours)

    def grant_bypass(
        self,
        principal_id: str,
        reason: str,
        granted_by: Optional[str] = None,
        duration_hours: Optional[float] = None,
    ) -> BypassGrantRecord:
        """
        Grant an emergency bypass.

        Args:
            principal_id: Principal receiving the grant
            reason: Incident reference or justification, required
            granted_by: Administrator issuing the grant
            duration_hours: Requested lifetime, capped at the configured maximum

        Raises:
            BypassDenied: principal not on the allowlist, or no reason given
        """
        reason = (reason or "").strip()
        if not reason:
            raise BypassDenied("A reason is required for an emergency bypass", {"cause": "missing_reason"})
        if duration_hours is not None and duration_hours <= 0:
            raise ValueError("duration_hours must be positive")

        if not self.allowlist.is_on_emergency_allowlist(principal_id):
            logger.warning(f"Emergency bypass denied for {principal_id} (not allowlisted), requested by {granted_by}")
            self.audit.record_audit_event(
                AuditKind.BYPASS_DENIED,
                principal_id,
                AuditOutcome.FAILURE,
                {"reason": reason, "granted_by": granted_by, "cause": "not_allowlisted"},
            )
            raise BypassDenied()

        duration = self.max_duration
        if duration_hours is not None:
            duration = min(duration, timedelta(hours=duration_hours))

        now = self.clock()
        grant = BypassGrantRecord(
            principal_id=principal_id,
            granted_at=now,
            expires_at=now + duration,
            reason=reason,
            granted_by=granted_by,
        )
        self.store.put_bypass_grant(grant)
        logger.warning(
            f"Emergency bypass granted for {principal_id} by {granted_by} until {grant.expires_at.isoformat()}"
        )
        self.audit.record_audit_event(
            AuditKind.BYPASS_GRANTED,
            principal_id,
            AuditOutcome.SUCCESS,
            {
                "reason": reason,
                "granted_by": granted_by,
                "expires_at": grant.expires_at.isoformat(),
                "duration_hours": duration.total_seconds() / 3600,
            },
        )
        return grant

    def revoke_bypass(self, principal_id: str, actor: Optional[str] = None) -> bool:
        removed = self.store.delete_bypass_grant(principal_id)
        if removed:
            self.audit.record_audit_event(
                AuditKind.BYPASS_REVOKED,
                principal_id,
                AuditOutcome.INFO,
                {"actor": actor},
            )
        return removed

    def active_grant(self, principal_id: str) -> Optional[BypassGrantRecord]:
        """The unexpired grant for the principal; an expired one is deleted here."""
        now = self.clock()
        grant = self.store.get_bypass_grant(principal_id)
        if grant is None:
            return None
        if grant.is_active(now):
            return grant
        if self.store.delete_bypass_grant(principal_id, expired_before=now):
            self.audit.record_audit_event(
                AuditKind.BYPASS_EXPIRED,
                principal_id,
                AuditOutcome.INFO,
                {"expired_at": grant.expires_at.isoformat(), "reason": grant.reason},
            )
        return None

    def is_bypass_active(self, principal_id: str) -> bool:
        return self.active_grant(principal_id) is not None

    def record_bypass_use(self, principal_id: str, device_fingerprint: Optional[str], grant: BypassGrantRecord) -> None:
        self.audit.record_audit_event(
            AuditKind.BYPASS_USED,
            principal_id,
            AuditOutcome.SUCCESS,
            {
                "device": device_fingerprint,
                "reason": grant.reason,
                "granted_by": grant.granted_by,
                "expires_at": grant.expires_at.isoformat(),
            },
        )
