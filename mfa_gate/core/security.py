from datetime import datetime
from typing import Any, Dict

import jwt

from .config import get_settings
from .time import utcnow

ALGORITHM = "HS256"
SESSION_TOKEN_TYPE = "mfa_session"
PRIMARY_TOKEN_TYPE = "access"


def _secret() -> str:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ValueError("MFAGATE_JWT_SECRET must be set")
    return settings.jwt_secret


def create_token(payload: Dict[str, Any], issuer: str, expires_at: datetime) -> str:
    claims = {
        **payload,
        "iss": issuer,
        "iat": utcnow(),
        "exp": expires_at,
    }
    return jwt.encode(claims, _secret(), algorithm=ALGORITHM)


def decode_token(token: str, issuer: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        _secret(),
        issuer=issuer,
        algorithms=[ALGORITHM],
        options={"require": ["iss", "iat", "exp", "sub"]},
    )


def create_session_token(principal_id: str, device_fingerprint: str, session_id: str, expires_at: datetime) -> str:
    """Token handed to the calling application after a successful verification."""
    settings = get_settings()
    return create_token(
        {"sub": principal_id, "dev": device_fingerprint, "sid": session_id, "type": SESSION_TOKEN_TYPE},
        settings.jwt_issuer,
        expires_at,
    )


def decode_session_token(token: str) -> Dict[str, Any]:
    payload = decode_token(token, get_settings().jwt_issuer)
    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise jwt.InvalidTokenError("Token is not an MFA session token")
    return payload


def create_primary_token(principal_id: str, role: str | None, expires_at: datetime) -> str:
    """Mint a primary-authentication token the way the identity provider does (tests, dev tooling)."""
    return create_token(
        {"sub": principal_id, "role": role, "type": PRIMARY_TOKEN_TYPE},
        get_settings().primary_token_issuer,
        expires_at,
    )


def decode_primary_token(token: str) -> Dict[str, Any]:
    payload = decode_token(token, get_settings().primary_token_issuer)
    if payload.get("type") != PRIMARY_TOKEN_TYPE:
        raise jwt.InvalidTokenError("Token is not a primary access token")
    return payload
