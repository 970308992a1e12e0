"""
Encryption of TOTP secrets at rest.
"""
import base64
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import get_settings
from .errors import CredentialCorrupted


@lru_cache(maxsize=4)
def _get_fernet(master_key: str, salt: str) -> Fernet:
    """Derive a Fernet key from the configured master key."""
    if not master_key:
        raise ValueError("MFAGATE_SECRET_ENCRYPTION_KEY must be set")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=100000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(master_key.encode()))
    return Fernet(key)


def _fernet() -> Fernet:
    settings = get_settings()
    return _get_fernet(settings.secret_encryption_key, settings.secret_encryption_salt)


def encrypt_secret(secret: str) -> str:
    """
    Encrypt a base32 TOTP secret for storage.

    Args:
        secret: Plain base32 secret

    Returns:
        Fernet token as text
    """
    return _fernet().encrypt(secret.encode()).decode()


def decrypt_secret(encrypted_secret: str) -> str:
    """
    Decrypt a stored TOTP secret.

    Raises:
        CredentialCorrupted: the token was tampered with, truncated or written
            under a different key
    """
    fernet = _fernet()
    try:
        return fernet.decrypt(encrypted_secret.encode()).decode()
    except (InvalidToken, UnicodeDecodeError) as exc:
        raise CredentialCorrupted() from exc
