"""Route guard that puts an endpoint behind the MFA gate."""
from fastapi import Depends

from mfa_gate.core.errors import AccessDenied, MFARequired
from mfa_gate.schemas.records import AllowedVia, DecisionOutcome
from mfa_gate.services.collaborators import PrimaryTokenIdentity
from mfa_gate.services.gate import MFAGate
from mfa_gate.services.policy_service import Decision

from .deps import get_current_principal, get_device_fingerprint, get_gate, get_session_token


def require_mfa(
    identity: PrimaryTokenIdentity = Depends(get_current_principal),
    device: str | None = Depends(get_device_fingerprint),
    session_token: str | None = Depends(get_session_token),
    gate: MFAGate = Depends(get_gate),
) -> Decision:
    """
    Allow the request through only on an Allow decision.

    A session token (X-MFA-Session) for the same principal, still backed by a
    valid session on the named device, is accepted directly. Otherwise the
    gate decides: ChallengeRequired becomes MFARequired (403) carrying the
    challenge mode so the client knows whether to enroll, confirm or verify;
    Denied becomes AccessDenied.
    """
    if session_token:
        session = gate.session_from_token(session_token)
        if (
            session is not None
            and session.principal_id == identity.principal_id
            and device in (None, session.device_fingerprint)
        ):
            return Decision.allow(AllowedVia.SESSION, session=session)

    decision = gate.decide(identity.principal_id, device)
    if decision.outcome == DecisionOutcome.ALLOW:
        return decision
    if decision.outcome == DecisionOutcome.CHALLENGE_REQUIRED:
        raise MFARequired(details={"mode": decision.mode.value})
    raise AccessDenied("MFA decision unavailable", {"reason": decision.reason})
