from datetime import datetime, timedelta

import pyotp

from mfa_gate.core.errors import StorageUnavailable
from mfa_gate.services.credential_store import MemoryCredentialStore
from mfa_gate.services.gate import MFAGate


class FrozenClock:
    """Injectable clock that only moves when a test moves it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class UnavailableStore(MemoryCredentialStore):
    """Memory store whose reads fail while `down` is set, or for the next `fail_next` calls."""

    def __init__(self):
        super().__init__()
        self.down = False
        self.fail_next = 0
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise StorageUnavailable()
        if self.fail_next > 0:
            self.fail_next -= 1
            raise StorageUnavailable()

    def get_credential(self, principal_id):
        self._check()
        return super().get_credential(principal_id)

    def get_bypass_grant(self, principal_id):
        self._check()
        return super().get_bypass_grant(principal_id)

    def get_session(self, principal_id, device_fingerprint):
        self._check()
        return super().get_session(principal_id, device_fingerprint)

    def delete_sessions(self, principal_id):
        self._check()
        return super().delete_sessions(principal_id)


def totp_code(secret: str, at: datetime, step_offset: int = 0) -> str:
    return pyotp.TOTP(secret).at(at + timedelta(seconds=30 * step_offset))


def wrong_code(secret: str, at: datetime) -> str:
    """A six digit value outside the acceptance window at `at`."""
    taken = {totp_code(secret, at, offset) for offset in (-2, -1, 0, 1, 2)}
    for candidate in ("000000", "111111", "222222", "333333", "444444", "555555"):
        if candidate not in taken:
            return candidate
    raise AssertionError("no free candidate")


def enroll_and_confirm(gate: MFAGate, clock: FrozenClock, principal_id: str):
    """Enroll and confirm, then step the clock past the confirming code's step."""
    started = gate.begin_enrollment(principal_id)
    result = gate.confirm_enrollment(principal_id, totp_code(started.secret, clock()))
    assert result.success
    clock.advance(seconds=30)
    return started.secret, started.backup_codes


def audit_kinds(gate: MFAGate, principal_id: str, prefix: str | None = None) -> list[str]:
    events, _ = gate.audit.list_events(principal_id=principal_id, kind_prefix=prefix, page_size=100)
    return [e.kind for e in events]
