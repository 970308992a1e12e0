from fastapi import APIRouter, Depends

from mfa_gate.api.deps import get_current_principal, get_device_fingerprint, get_gate, require_device
from mfa_gate.api.guards import require_mfa
from mfa_gate.schemas.sessions import (
    DecisionOut,
    DeviceStatusOut,
    LogoutResponse,
    MFAStatusOut,
    SessionList,
    SessionOut,
    VerifyRequest,
    VerifyResponse,
)
from mfa_gate.services.gate import MFAGate

router = APIRouter(prefix="/api/mfa", tags=["mfa"])


@router.post("/verify", response_model=VerifyResponse)
def verify(
    body: VerifyRequest,
    identity=Depends(get_current_principal),
    device: str = Depends(require_device),
    gate: MFAGate = Depends(get_gate),
):
    result = gate.verify_code(identity.principal_id, body.code, device_fingerprint=device)
    result.raise_for_failure()
    issued = result.issued_session
    return VerifyResponse(
        method=result.method,
        backup_codes_remaining=result.backup_codes_remaining,
        session=SessionOut.model_validate(issued.session) if issued else None,
        session_token=issued.token if issued else None,
    )


@router.get("/decision", response_model=DecisionOut)
def decision(
    identity=Depends(get_current_principal),
    device: str | None = Depends(get_device_fingerprint),
    gate: MFAGate = Depends(get_gate),
):
    return DecisionOut.model_validate(gate.decide(identity.principal_id, device))


@router.get("/status", response_model=MFAStatusOut)
def status(
    identity=Depends(get_current_principal),
    device: str | None = Depends(get_device_fingerprint),
    gate: MFAGate = Depends(get_gate),
):
    return MFAStatusOut.model_validate(gate.mfa_status(identity.principal_id, device))


@router.get("/sessions", response_model=SessionList)
def list_sessions(
    identity=Depends(get_current_principal),
    _decision=Depends(require_mfa),
    gate: MFAGate = Depends(get_gate),
):
    sessions = gate.list_sessions(identity.principal_id)
    devices = gate.device_status(identity.principal_id)
    return SessionList(
        items=[SessionOut.model_validate(s) for s in sessions],
        devices=DeviceStatusOut.model_validate(devices),
    )


@router.post("/logout", response_model=LogoutResponse)
def logout(
    identity=Depends(get_current_principal),
    device: str = Depends(require_device),
    gate: MFAGate = Depends(get_gate),
):
    removed = gate.invalidate_session(identity.principal_id, device)
    return LogoutResponse(removed=int(removed))


@router.post("/logout-all", response_model=LogoutResponse)
def logout_all(identity=Depends(get_current_principal), gate: MFAGate = Depends(get_gate)):
    return LogoutResponse(removed=gate.invalidate_all(identity.principal_id, reason="logout"))
