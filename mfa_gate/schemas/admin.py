from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class BypassGrantRequest(BaseModel):
    principal_id: str = Field(..., min_length=1, max_length=128)
    reason: str = Field(..., min_length=1, max_length=500)
    duration_hours: Optional[float] = Field(default=None, gt=0, le=24)


class BypassGrantOut(BaseModel):
    principal_id: str
    granted_at: datetime
    expires_at: datetime
    reason: str
    granted_by: Optional[str] = None

    model_config = {"from_attributes": True}


class AdminActionResult(BaseModel):
    principal_id: str
    changed: bool
    count: Optional[int] = None


class CleanupOut(BaseModel):
    sessions: int
    bypass_grants: int
    lockouts: int
    pending_credentials: int

    model_config = {"from_attributes": True}


class AuditEventOut(BaseModel):
    id: str
    at: datetime
    kind: str
    principal_id: Optional[str] = None
    outcome: str
    metadata: dict[str, Any] = {}

    model_config = {"from_attributes": True}


class AuditPage(BaseModel):
    items: list[AuditEventOut]
    total: int
    page: int
    pageSize: int
