from typing import Optional

from pydantic import BaseModel, Field

from .sessions import SessionOut


class BeginEnrollmentRequest(BaseModel):
    account_name: Optional[str] = Field(default=None, max_length=255)
    replace: bool = False


class BeginEnrollmentResponse(BaseModel):
    principal_id: str
    secret: str
    provisioning_uri: str
    qr_png_base64: str
    backup_codes: list[str]
    replaced: bool = False

    model_config = {"from_attributes": True}


class ConfirmEnrollmentRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8)


class ConfirmEnrollmentResponse(BaseModel):
    confirmed: bool = True
    session: Optional[SessionOut] = None
    session_token: Optional[str] = None


class BackupCodesRemaining(BaseModel):
    remaining: int


class BackupCodesResponse(BaseModel):
    backup_codes: list[str]
