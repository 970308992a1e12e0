"""TOTP and backup code primitives."""
import base64
import hmac
import io
import secrets
from datetime import datetime
from functools import lru_cache

import pyotp
import qrcode
from passlib.context import CryptContext

from .config import get_settings

# no 0/O, 1/I/L, so codes survive being read aloud or handwritten
BACKUP_CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"


def totp_from_secret(secret: str) -> pyotp.TOTP:
    settings = get_settings()
    return pyotp.TOTP(
        secret,
        digits=settings.totp_digits,
        interval=settings.totp_period_seconds,
        issuer=settings.totp_issuer,
    )


def generate_totp_secret() -> str:
    """32 base32 characters = 160 bits of entropy."""
    length = max(32, get_settings().totp_secret_length)
    return pyotp.random_base32(length=length)


def current_step(at: datetime) -> int:
    return int(at.timestamp()) // get_settings().totp_period_seconds


def match_totp_step(secret: str, code: str, at: datetime, window: int | None = None) -> int | None:
    """
    Find the time step a TOTP code belongs to.

    Every candidate step in [t - window, t + window] is compared in constant
    time; the loop never exits early.

    Returns:
        The matching step, or None
    """
    settings = get_settings()
    window = settings.totp_valid_window if window is None else window
    totp = totp_from_secret(secret)
    step = current_step(at)
    matched = None
    for offset in range(-window, window + 1):
        candidate = totp.generate_otp(step + offset)
        if hmac.compare_digest(candidate.encode(), code.encode()):
            matched = step + offset
    return matched


def is_totp_format(code: str) -> bool:
    return code.isdigit() and len(code) == get_settings().totp_digits


def provisioning_uri(secret: str, account_name: str) -> str:
    return totp_from_secret(secret).provisioning_uri(
        name=account_name,
        issuer_name=get_settings().totp_issuer,
    )


def build_qr_png_base64(otpauth_url: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(otpauth_url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def normalize_backup_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()


def is_backup_code_format(code: str) -> bool:
    normalized = normalize_backup_code(code)
    return (
        len(normalized) == get_settings().backup_code_length
        and normalized.isalnum()
        and not normalized.isdigit()
    )


def generate_backup_codes(count: int | None = None) -> list[str]:
    """
    Generate backup codes for account recovery.

    Returns:
        Codes formatted as XXXXX-XXXXX for display
    """
    settings = get_settings()
    count = count or settings.backup_codes_count
    length = settings.backup_code_length
    codes = []
    while len(codes) < count:
        raw = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        if raw.isdigit() or raw in codes:
            continue
        half = length // 2
        codes.append(f"{raw[:half]}-{raw[half:]}")
    return codes


@lru_cache(maxsize=4)
def _backup_code_context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["pbkdf2_sha256"], pbkdf2_sha256__rounds=rounds)


def _context() -> CryptContext:
    return _backup_code_context(get_settings().backup_code_hash_rounds)


def hash_backup_code(code: str) -> str:
    return _context().hash(normalize_backup_code(code))


def verify_backup_code(code: str, code_hash: str) -> bool:
    try:
        return _context().verify(normalize_backup_code(code), code_hash)
    except ValueError:
        return False
