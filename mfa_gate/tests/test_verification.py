import threading
from datetime import timedelta

import pytest

from mfa_gate.core.errors import CredentialCorrupted, InvalidCode, Locked, NotEnrolled
from mfa_gate.schemas.records import ChallengeMode, DecisionOutcome, VerificationMethod, VerificationReason
from mfa_gate.tests.helpers import audit_kinds, enroll_and_confirm, totp_code, wrong_code


def test_lockout_scenario_is_per_device_after_unlock(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p2")

    for expected_remaining in (2, 1, 0):
        result = gate.verify_code("p2", wrong_code(secret, clock()), device_fingerprint="d2")
        assert result.reason == VerificationReason.INVALID_CODE
        assert result.remaining_attempts == expected_remaining

    result = gate.verify_code("p2", totp_code(secret, clock()), device_fingerprint="d2")
    assert result.reason == VerificationReason.LOCKED
    assert result.locked_until == clock() + timedelta(minutes=15)
    assert result.issued_session is None

    clock.advance(minutes=14, seconds=59)
    assert gate.verify_code("p2", totp_code(secret, clock()), device_fingerprint="d2").reason == VerificationReason.LOCKED

    clock.advance(seconds=1)
    result = gate.verify_code("p2", totp_code(secret, clock()), device_fingerprint="d2")
    assert result.success
    assert result.method == VerificationMethod.TOTP
    session = result.issued_session.session
    assert session.expires_at == clock() + timedelta(hours=8)

    assert gate.decide("p2", "d2", True).outcome == DecisionOutcome.ALLOW
    other = gate.decide("p2", "d3", True)
    assert other.outcome == DecisionOutcome.CHALLENGE_REQUIRED
    assert other.mode == ChallengeMode.VERIFICATION

    kinds = audit_kinds(gate, "p2")
    assert "lockout.engaged" in kinds
    assert "verification.blocked_locked" in kinds
    assert "lockout.cleared" in kinds


def test_success_resets_failures(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    gate.verify_code("p1", wrong_code(secret, clock()))
    gate.verify_code("p1", wrong_code(secret, clock()))
    assert gate.store.get_lockout("p1").consecutive_failures == 2

    assert gate.verify_code("p1", totp_code(secret, clock())).success
    assert gate.store.get_lockout("p1").consecutive_failures == 0

    # a fresh budget of three after the reset
    clock.advance(seconds=30)
    assert gate.verify_code("p1", wrong_code(secret, clock())).remaining_attempts == 2


def test_totp_code_cannot_be_replayed_within_window(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    code = totp_code(secret, clock())
    assert gate.verify_code("p1", code).success

    clock.advance(seconds=20)
    replay = gate.verify_code("p1", code)
    assert not replay.success
    assert replay.reason == VerificationReason.INVALID_CODE

    # one step later the code is still inside the window as t-1
    clock.advance(seconds=10)
    assert not gate.verify_code("p1", code).success

    events, _ = gate.audit.list_events(principal_id="p1", kind_prefix="verification.failed")
    assert {e.metadata["detail"] for e in events} == {"replayed"}


def test_next_step_code_is_accepted_after_current(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    assert gate.verify_code("p1", totp_code(secret, clock())).success
    assert gate.verify_code("p1", totp_code(secret, clock(), 1)).success
    # older step than the last accepted one
    assert not gate.verify_code("p1", totp_code(secret, clock(), -1)).success


def test_drifted_codes_within_one_step(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    clock.advance(seconds=60)
    assert gate.verify_code("p1", totp_code(secret, clock(), -1)).success
    clock.advance(seconds=60)
    assert gate.verify_code("p1", totp_code(secret, clock(), 1)).success


def test_backup_code_is_single_use(gate, clock):
    _, codes = enroll_and_confirm(gate, clock, "p1")
    result = gate.verify_code("p1", codes[0])
    assert result.success
    assert result.method == VerificationMethod.BACKUP_CODE
    assert result.backup_codes_remaining == 7

    again = gate.verify_code("p1", codes[0])
    assert not again.success
    assert again.reason == VerificationReason.INVALID_CODE
    assert gate.remaining_backup_codes("p1") == 7

    normalized = codes[1].replace("-", "").lower()
    assert gate.verify_code("p1", normalized).success
    assert gate.remaining_backup_codes("p1") == 6


def test_failure_reason_is_opaque(gate, clock):
    secret, codes = enroll_and_confirm(gate, clock, "p1")
    assert gate.verify_code("p1", codes[0]).success
    failures = [
        gate.verify_code("p1", "12ab"),
        gate.verify_code("p1", codes[0]),
    ]
    assert all(r.reason == VerificationReason.INVALID_CODE for r in failures)
    with pytest.raises(InvalidCode) as exc:
        failures[0].raise_for_failure()
    assert exc.value.detail["message"] == "Invalid code"

    events, _ = gate.audit.list_events(principal_id="p1", kind_prefix="verification.failed")
    details = {e.metadata["detail"] for e in events}
    assert details == {"malformed", "no_matching_backup_code"}


def test_locked_result_raises_with_remaining_time(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    for _ in range(3):
        gate.verify_code("p1", wrong_code(secret, clock()))
    clock.advance(minutes=5)
    result = gate.verify_code("p1", totp_code(secret, clock()))
    with pytest.raises(Locked) as exc:
        result.raise_for_failure()
    assert exc.value.retry_after_seconds == 600
    assert "10m 00s" in exc.value.message


def test_verify_without_credential(gate):
    with pytest.raises(NotEnrolled):
        gate.verify_code("nobody", "123456")


def test_lock_check_precedes_credential_read(flaky_gate, flaky_store, clock):
    secret, _ = enroll_and_confirm(flaky_gate, clock, "p1")
    for _ in range(3):
        flaky_gate.verify_code("p1", wrong_code(secret, clock()))
    flaky_store.down = True
    # a read of the credential would raise; the lock answers first
    assert flaky_gate.verify_code("p1", totp_code(secret, clock())).reason == VerificationReason.LOCKED


def test_corrupted_secret_does_not_consume_budget(gate, clock):
    secret, codes = enroll_and_confirm(gate, clock, "p1")
    credential = gate.store.get_credential("p1")
    credential.secret_encrypted = "not-a-fernet-token"
    gate.store.put_credential(credential)

    with pytest.raises(CredentialCorrupted):
        gate.verify_code("p1", totp_code(secret, clock()))
    assert gate.store.get_lockout("p1").consecutive_failures == 0

    # backup codes do not need the secret
    assert gate.verify_code("p1", codes[0]).success


def test_concurrent_backup_code_use_succeeds_once(memory_gate, clock):
    _, codes = enroll_and_confirm(memory_gate, clock, "p1")
    results = []
    barrier = threading.Barrier(6)

    def attempt():
        barrier.wait()
        results.append(memory_gate.verify_code("p1", codes[0]))

    threads = [threading.Thread(target=attempt) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.success) == 1
    assert memory_gate.remaining_backup_codes("p1") == 7


def test_concurrent_totp_submission_succeeds_once(memory_gate, clock):
    secret, _ = enroll_and_confirm(memory_gate, clock, "p1")
    code = totp_code(secret, clock())
    results = []
    barrier = threading.Barrier(5)

    def attempt():
        barrier.wait()
        results.append(memory_gate.verify_code("p1", code))

    threads = [threading.Thread(target=attempt) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r.success) == 1
