from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .records import AllowedVia, ChallengeMode, DecisionOutcome, SessionSource, VerificationMethod


class SessionOut(BaseModel):
    id: str
    device_fingerprint: str
    verified: bool
    issued_at: datetime
    expires_at: datetime
    source_of_truth: SessionSource

    model_config = {"from_attributes": True}


class DeviceStatusOut(BaseModel):
    verified_devices: int
    known_devices: int
    label: str

    model_config = {"from_attributes": True}


class SessionList(BaseModel):
    items: list[SessionOut]
    devices: DeviceStatusOut


class VerifyRequest(BaseModel):
    code: str


class VerifyResponse(BaseModel):
    success: bool = True
    method: VerificationMethod
    backup_codes_remaining: Optional[int] = None
    session: Optional[SessionOut] = None
    session_token: Optional[str] = None


class DecisionOut(BaseModel):
    outcome: DecisionOutcome
    mode: Optional[ChallengeMode] = None
    via: Optional[AllowedVia] = None
    reason: str = ""
    bypass_expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MFAStatusOut(BaseModel):
    principal_id: str
    mandatory: bool
    enrolled: bool
    confirmed: bool
    backup_codes_remaining: int
    locked: bool
    locked_until: Optional[datetime] = None
    remaining_attempts: int
    bypass_active: bool
    bypass_expires_at: Optional[datetime] = None
    session_valid: bool
    session_expires_at: Optional[datetime] = None
    devices: DeviceStatusOut

    model_config = {"from_attributes": True}


class LogoutResponse(BaseModel):
    removed: int
