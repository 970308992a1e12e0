"""
Boundary interfaces to the systems around the MFA gate, with the default
implementations the gate wires up from configuration.
"""
import logging
from typing import Optional, Protocol

import jwt

from mfa_gate.core import security
from mfa_gate.core.config import Settings

logger = logging.getLogger(__name__)


class MFAPolicy(Protocol):
    def is_mfa_mandatory(self, principal_id: str) -> bool:
        ...


class EmergencyAllowlist(Protocol):
    def is_on_emergency_allowlist(self, principal_id: str) -> bool:
        ...


class PrimaryTokenIdentity:
    """
    Identity answer backed by the primary-authentication JWT of one request.

    The identity provider mints the token after the password (or SSO) check;
    a valid, unexpired token for the principal is the "just verified" signal.
    """

    def __init__(self, payload: Optional[dict]):
        self.payload = payload or {}

    @classmethod
    def from_bearer(cls, token: str) -> "PrimaryTokenIdentity":
        try:
            return cls(security.decode_primary_token(token))
        except jwt.InvalidTokenError as exc:
            logger.info(f"Rejected primary token: {exc}")
            return cls(None)

    @property
    def principal_id(self) -> Optional[str]:
        return self.payload.get("sub")

    @property
    def role(self) -> Optional[str]:
        return self.payload.get("role")

    def primary_authentication_verified(self, principal_id: str) -> bool:
        return bool(principal_id) and self.principal_id == principal_id


class SettingsMFAPolicy:
    """MFA is mandatory per the global default, except for configured exemptions."""

    def __init__(self, settings: Settings):
        self.mandatory_default = settings.mfa_mandatory_default
        self.exempt = set(settings.mfa_exempt_principals)

    def is_mfa_mandatory(self, principal_id: str) -> bool:
        if principal_id in self.exempt:
            return False
        return self.mandatory_default


class StaticAllowlist:
    """Out-of-band allowlist maintained in deployment configuration, not through the API."""

    def __init__(self, principal_ids):
        self._principal_ids = frozenset(principal_ids)

    def is_on_emergency_allowlist(self, principal_id: str) -> bool:
        return principal_id in self._principal_ids
