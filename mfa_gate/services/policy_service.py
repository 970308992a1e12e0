"""Single decision point for whether a request may pass the MFA gate."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from mfa_gate.core.errors import StorageUnavailable
from mfa_gate.schemas.records import AllowedVia, ChallengeMode, DecisionOutcome, SessionRecord

from .bypass_service import EmergencyBypassManager
from .collaborators import MFAPolicy
from .credential_store import CredentialStore
from .session_service import SessionLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class Decision:
    outcome: DecisionOutcome
    mode: Optional[ChallengeMode] = None
    via: Optional[AllowedVia] = None
    reason: str = ""
    session: Optional[SessionRecord] = None
    bypass_expires_at: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOW

    @classmethod
    def allow(cls, via: AllowedVia, **kwargs) -> "Decision":
        return cls(DecisionOutcome.ALLOW, via=via, reason=via.value, **kwargs)

    @classmethod
    def challenge(cls, mode: ChallengeMode) -> "Decision":
        return cls(DecisionOutcome.CHALLENGE_REQUIRED, mode=mode, reason=mode.value)

    @classmethod
    def denied(cls, reason: str) -> "Decision":
        return cls(DecisionOutcome.DENIED, reason=reason)


class AccessPolicyEvaluator:
    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionLifecycleManager,
        bypass: EmergencyBypassManager,
        policy: MFAPolicy,
    ):
        self.store = store
        self.sessions = sessions
        self.bypass = bypass
        self.policy = policy

    def decide(
        self, principal_id: str, device_fingerprint: Optional[str], mfa_mandatory: Optional[bool] = None
    ) -> Decision:
        """
        Allow, ChallengeRequired(mode) or Denied.

        Checked in order: policy, bypass grant, device session, credential
        state. Storage failures fail closed.
        """
        try:
            return self._decide(principal_id, device_fingerprint, mfa_mandatory)
        except StorageUnavailable:
            logger.error(f"MFA decision for {principal_id} denied: storage unavailable")
            return Decision.denied("storage_unavailable")

    def _decide(self, principal_id: str, device_fingerprint: Optional[str], mfa_mandatory: Optional[bool]) -> Decision:
        if mfa_mandatory is None:
            mfa_mandatory = self.policy.is_mfa_mandatory(principal_id)
        if not mfa_mandatory:
            return Decision.allow(AllowedVia.NOT_MANDATORY)

        grant = self.bypass.active_grant(principal_id)
        if grant is not None:
            self.bypass.record_bypass_use(principal_id, device_fingerprint, grant)
            return Decision.allow(AllowedVia.BYPASS, bypass_expires_at=grant.expires_at)

        session = self.sessions.check_session(principal_id, device_fingerprint or "")
        if session is not None:
            return Decision.allow(AllowedVia.SESSION, session=session)

        credential = self.store.get_credential(principal_id)
        if credential is None:
            return Decision.challenge(ChallengeMode.ENROLLMENT)
        if not credential.confirmed:
            return Decision.challenge(ChallengeMode.ENROLLMENT_CONFIRMATION)
        return Decision.challenge(ChallengeMode.VERIFICATION)
