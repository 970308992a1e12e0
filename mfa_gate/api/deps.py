from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mfa_gate.core.config import get_settings
from mfa_gate.core.errors import AccessDenied, DeviceRequired, PrimaryAuthenticationRequired
from mfa_gate.services.collaborators import PrimaryTokenIdentity
from mfa_gate.services.gate import MFAGate, build_gate

bearer_scheme = HTTPBearer(auto_error=False)

_gate: MFAGate | None = None


def get_gate() -> MFAGate:
    global _gate
    if _gate is None:
        _gate = build_gate()
    return _gate


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> PrimaryTokenIdentity:
    if credentials is None:
        raise PrimaryAuthenticationRequired("Missing bearer token")
    identity = PrimaryTokenIdentity.from_bearer(credentials.credentials)
    if not identity.primary_authentication_verified(identity.principal_id):
        raise PrimaryAuthenticationRequired("Invalid token")
    return identity


def get_device_fingerprint(
    x_device_fingerprint: str | None = Header(default=None, alias="X-Device-Fingerprint"),
) -> str | None:
    if x_device_fingerprint is None:
        return None
    return x_device_fingerprint.strip() or None


def require_device(device: str | None = Depends(get_device_fingerprint)) -> str:
    if not device:
        raise DeviceRequired()
    return device


def require_role(role: str):
    def checker(identity: PrimaryTokenIdentity = Depends(get_current_principal)) -> PrimaryTokenIdentity:
        if identity.role != role:
            raise AccessDenied("Insufficient role")
        return identity

    return checker


def require_admin(identity: PrimaryTokenIdentity = Depends(get_current_principal)) -> PrimaryTokenIdentity:
    return require_role(get_settings().admin_role)(identity)


def get_session_token(
    x_mfa_session: str | None = Header(default=None, alias="X-MFA-Session"),
) -> str | None:
    if x_mfa_session is None:
        return None
    return x_mfa_session.strip() or None
