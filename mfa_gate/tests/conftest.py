import os

os.environ["MFAGATE_SECRET_ENCRYPTION_KEY"] = "test-master-key-for-mfa-gate"
os.environ["MFAGATE_JWT_SECRET"] = "test-jwt-secret-that-is-long-enough-for-hs256"
os.environ["MFAGATE_BACKUP_CODE_HASH_ROUNDS"] = "1000"
os.environ["MFAGATE_DATABASE_URL"] = "sqlite://"
os.environ["MFAGATE_CREDENTIAL_STORE"] = "memory"
os.environ["MFAGATE_EMERGENCY_ALLOWLIST_RAW"] = "p4,oncall-admin"
os.environ["MFAGATE_LOG_LEVEL"] = "WARNING"

import time
from datetime import datetime, timezone

import pytest

from mfa_gate.core.config import get_settings

get_settings.cache_clear()

from mfa_gate.db.base import Base  # noqa: E402
from mfa_gate.db.session import build_engine, build_sessionmaker  # noqa: E402
from mfa_gate.services.audit_service import MemoryAuditSink, SqlAuditSink  # noqa: E402
from mfa_gate.services.collaborators import SettingsMFAPolicy, StaticAllowlist  # noqa: E402
from mfa_gate.services.credential_store import MemoryCredentialStore  # noqa: E402
from mfa_gate.services.gate import MFAGate  # noqa: E402
from mfa_gate.services.sql_store import SqlCredentialStore  # noqa: E402

from .helpers import FrozenClock, UnavailableStore  # noqa: E402


@pytest.fixture()
def settings():
    return get_settings()


@pytest.fixture()
def clock():
    # aligned to a TOTP step boundary, near real time so minted tokens are not already expired
    aligned = (int(time.time()) // 30) * 30
    return FrozenClock(datetime.fromtimestamp(aligned, tz=timezone.utc))


@pytest.fixture()
def allowlist():
    return StaticAllowlist(["p4", "oncall-admin"])


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    try:
        yield build_sessionmaker(engine)
    finally:
        engine.dispose()


def _gate(store, audit, settings, clock, allowlist) -> MFAGate:
    return MFAGate(
        store,
        audit,
        settings=settings,
        clock=clock,
        policy=SettingsMFAPolicy(settings),
        allowlist=allowlist,
    )


@pytest.fixture()
def memory_gate(settings, clock, allowlist):
    return _gate(MemoryCredentialStore(), MemoryAuditSink(clock), settings, clock, allowlist)


@pytest.fixture()
def sql_gate(settings, clock, allowlist, session_factory):
    return _gate(SqlCredentialStore(session_factory), SqlAuditSink(session_factory, clock), settings, clock, allowlist)


@pytest.fixture(params=["memory", "sql"])
def gate(request):
    return request.getfixturevalue(f"{request.param}_gate")


@pytest.fixture()
def flaky_store():
    return UnavailableStore()


@pytest.fixture()
def flaky_gate(settings, clock, allowlist, flaky_store):
    return _gate(flaky_store, MemoryAuditSink(clock), settings, clock, allowlist)
