"""MFA error taxonomy with machine-readable codes."""
from datetime import datetime
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class MFAError(HTTPException):
    """Error carrying a stable code, a user-facing message and optional details."""

    code = "MFA_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "MFA operation failed"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(
            status_code=type(self).status_code,
            detail={"code": self.code, "message": self.message, "details": self.details},
        )


class InvalidCode(MFAError):
    code = "INVALID_CODE"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid code"


class Locked(MFAError):
    code = "LOCKED"
    status_code = status.HTTP_423_LOCKED

    def __init__(self, locked_until: datetime, now: datetime):
        remaining = max(0, int((locked_until - now).total_seconds()))
        minutes, seconds = divmod(remaining, 60)
        super().__init__(
            f"Too many failed attempts. Try again in {minutes}m {seconds:02d}s.",
            {"locked_until": locked_until.isoformat(), "retry_after_seconds": remaining},
        )
        self.locked_until = locked_until
        self.retry_after_seconds = remaining


class AlreadyEnrolled(MFAError):
    code = "ALREADY_ENROLLED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "MFA is already enrolled; request replacement explicitly"


class NotEnrolled(MFAError):
    code = "NOT_ENROLLED"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "MFA is not enrolled"


class CredentialCorrupted(MFAError):
    code = "CREDENTIAL_CORRUPTED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Stored MFA credential is unreadable; re-enrollment required"


class StorageUnavailable(MFAError):
    code = "STORAGE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "MFA storage is unavailable"


class BypassDenied(MFAError):
    code = "BYPASS_DENIED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Principal is not eligible for an emergency bypass"


class PrimaryAuthenticationRequired(MFAError):
    code = "PRIMARY_AUTH_REQUIRED"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Primary authentication required"


class MFARequired(MFAError):
    code = "MFA_REQUIRED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "MFA challenge required"


class DeviceRequired(MFAError):
    code = "DEVICE_REQUIRED"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "X-Device-Fingerprint header is required"


class AccessDenied(MFAError):
    code = "ACCESS_DENIED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


async def mfa_error_handler(request: Request, exc: MFAError) -> JSONResponse:
    headers = {}
    if isinstance(exc, Locked):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message, "details": exc.details}},
        headers=headers,
    )
