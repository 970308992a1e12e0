from fastapi import APIRouter, Depends, Query

from mfa_gate.api.deps import get_gate, require_admin
from mfa_gate.api.guards import require_mfa
from mfa_gate.schemas.admin import (
    AdminActionResult,
    AuditEventOut,
    AuditPage,
    BypassGrantOut,
    BypassGrantRequest,
    CleanupOut,
)
from mfa_gate.schemas.sessions import MFAStatusOut
from mfa_gate.services.gate import MFAGate

router = APIRouter(
    prefix="/api/admin/mfa",
    tags=["admin-mfa"],
    dependencies=[Depends(require_admin), Depends(require_mfa)],
)


@router.post("/bypass", response_model=BypassGrantOut)
def grant_bypass(body: BypassGrantRequest, admin=Depends(require_admin), gate: MFAGate = Depends(get_gate)):
    grant = gate.grant_bypass(
        body.principal_id,
        body.reason,
        granted_by=admin.principal_id,
        duration_hours=body.duration_hours,
    )
    return BypassGrantOut.model_validate(grant)


@router.delete("/bypass/{principal_id}", response_model=AdminActionResult)
def revoke_bypass(principal_id: str, admin=Depends(require_admin), gate: MFAGate = Depends(get_gate)):
    revoked = gate.revoke_bypass(principal_id, actor=admin.principal_id)
    return AdminActionResult(principal_id=principal_id, changed=revoked)


@router.post("/principals/{principal_id}/reset", response_model=AdminActionResult)
def reset_credential(principal_id: str, admin=Depends(require_admin), gate: MFAGate = Depends(get_gate)):
    removed = gate.reset_credential(principal_id, actor=admin.principal_id)
    return AdminActionResult(principal_id=principal_id, changed=removed)


@router.post("/principals/{principal_id}/unlock", response_model=AdminActionResult)
def unlock(principal_id: str, admin=Depends(require_admin), gate: MFAGate = Depends(get_gate)):
    unlocked = gate.unlock(principal_id, actor=admin.principal_id)
    return AdminActionResult(principal_id=principal_id, changed=unlocked)


@router.delete("/principals/{principal_id}/sessions", response_model=AdminActionResult)
def invalidate_sessions(principal_id: str, admin=Depends(require_admin), gate: MFAGate = Depends(get_gate)):
    removed = gate.invalidate_all(principal_id, reason="admin", actor=admin.principal_id)
    return AdminActionResult(principal_id=principal_id, changed=removed > 0, count=removed)


@router.get("/principals/{principal_id}/status", response_model=MFAStatusOut)
def principal_status(principal_id: str, gate: MFAGate = Depends(get_gate)):
    return MFAStatusOut.model_validate(gate.mfa_status(principal_id, None))


@router.get("/audit", response_model=AuditPage)
def list_audit(
    principal_id: str | None = None,
    kind: str | None = None,
    page: int = Query(1, ge=1),
    pageSize: int = Query(20, ge=1, le=100),
    gate: MFAGate = Depends(get_gate),
):
    items, total = gate.list_audit_events(principal_id=principal_id, kind_prefix=kind, page=page, page_size=pageSize)
    return AuditPage(
        items=[AuditEventOut.model_validate(i) for i in items],
        total=total,
        page=page,
        pageSize=pageSize,
    )


@router.post("/cleanup", response_model=CleanupOut)
def cleanup(gate: MFAGate = Depends(get_gate)):
    return CleanupOut.model_validate(gate.cleanup_expired())
