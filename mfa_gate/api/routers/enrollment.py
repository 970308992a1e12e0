from fastapi import APIRouter, Depends

from mfa_gate.api.deps import get_current_principal, get_device_fingerprint, get_gate
from mfa_gate.api.guards import require_mfa
from mfa_gate.core.errors import AccessDenied, MFARequired
from mfa_gate.schemas.enrollment import (
    BackupCodesRemaining,
    BackupCodesResponse,
    BeginEnrollmentRequest,
    BeginEnrollmentResponse,
    ConfirmEnrollmentRequest,
    ConfirmEnrollmentResponse,
)
from mfa_gate.schemas.records import ChallengeMode, DecisionOutcome
from mfa_gate.schemas.sessions import SessionOut
from mfa_gate.services.gate import MFAGate

router = APIRouter(prefix="/api/mfa/enrollment", tags=["mfa-enrollment"])


@router.post("", response_model=BeginEnrollmentResponse)
def begin_enrollment(
    body: BeginEnrollmentRequest,
    identity=Depends(get_current_principal),
    device: str | None = Depends(get_device_fingerprint),
    gate: MFAGate = Depends(get_gate),
):
    principal_id = identity.principal_id
    if body.replace:
        # swapping a confirmed authenticator needs the current one first
        decision = gate.decide(principal_id, device)
        if decision.outcome == DecisionOutcome.DENIED:
            raise AccessDenied("MFA decision unavailable", {"reason": decision.reason})
        if decision.mode == ChallengeMode.VERIFICATION:
            raise MFARequired(details={"mode": decision.mode.value})
    started = gate.begin_enrollment(principal_id, account_name=body.account_name, replace=body.replace)
    return BeginEnrollmentResponse.model_validate(started)


@router.post("/confirm", response_model=ConfirmEnrollmentResponse)
def confirm_enrollment(
    body: ConfirmEnrollmentRequest,
    identity=Depends(get_current_principal),
    device: str | None = Depends(get_device_fingerprint),
    gate: MFAGate = Depends(get_gate),
):
    result = gate.confirm_enrollment(identity.principal_id, body.code, device_fingerprint=device)
    result.raise_for_failure()
    issued = result.issued_session
    return ConfirmEnrollmentResponse(
        confirmed=True,
        session=SessionOut.model_validate(issued.session) if issued else None,
        session_token=issued.token if issued else None,
    )


@router.get("/backup-codes", response_model=BackupCodesRemaining)
def remaining_backup_codes(identity=Depends(get_current_principal), gate: MFAGate = Depends(get_gate)):
    return BackupCodesRemaining(remaining=gate.remaining_backup_codes(identity.principal_id))


@router.post("/backup-codes/regenerate", response_model=BackupCodesResponse)
def regenerate_backup_codes(
    identity=Depends(get_current_principal),
    _decision=Depends(require_mfa),
    gate: MFAGate = Depends(get_gate),
):
    codes = gate.regenerate_backup_codes(identity.principal_id, actor=identity.principal_id)
    return BackupCodesResponse(backup_codes=codes)
