from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str | List[str]) -> List[str]:
    if isinstance(value, list):
        return value
    return [v.strip() for v in str(value).split(",") if v and v.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MFAGATE_",
        extra="ignore",
    )

    app_name: str = "MFA Gate"
    database_url: str = "sqlite:///./mfa_gate.db"
    db_echo: bool = False
    # "sql" keeps everything in the database, "memory" is process-local only
    credential_store: str = "sql"

    # values must come from environment/.env in production
    secret_encryption_key: str = ""
    secret_encryption_salt: str = "mfa-gate-secret-salt"

    jwt_secret: str = ""
    jwt_issuer: str = "mfa-gate"
    primary_token_issuer: str = "identity"
    admin_role: str = "SecurityAdmin"

    totp_issuer: str = "MFA Gate"
    totp_digits: int = 6
    totp_period_seconds: int = 30
    totp_valid_window: int = 1
    totp_secret_length: int = 32

    backup_codes_count: int = 8
    backup_code_length: int = 10
    backup_code_hash_rounds: int = 12000
    # unconfirmed enrollments older than this are dropped by cleanup
    pending_enrollment_ttl_hours: int = 24

    lockout_failure_threshold: int = 3
    lockout_duration_minutes: int = 15

    session_ttl_hours: int = 8
    session_cache_enabled: bool = True
    session_cache_seconds: int = 60

    bypass_max_hours: int = 24
    emergency_allowlist_raw: str = ""

    mfa_mandatory_default: bool = True
    mfa_exempt_principals_raw: str = ""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins_raw: str = "http://localhost:5173"
    enable_docs: bool = True

    log_level: str = "INFO"
    log_file: str = ""

    @property
    def cors_origins(self) -> List[str]:
        parsed = _split_csv(self.cors_origins_raw)
        return parsed or ["http://localhost:5173"]

    @property
    def emergency_allowlist(self) -> List[str]:
        return _split_csv(self.emergency_allowlist_raw)

    @property
    def mfa_exempt_principals(self) -> List[str]:
        return _split_csv(self.mfa_exempt_principals_raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
