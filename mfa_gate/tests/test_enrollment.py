import pytest

from mfa_gate.core.errors import AlreadyEnrolled, NotEnrolled
from mfa_gate.schemas.records import ChallengeMode, DecisionOutcome, VerificationReason
from mfa_gate.tests.helpers import audit_kinds, enroll_and_confirm, totp_code, wrong_code


def test_first_enrollment_scenario(gate, clock):
    decision = gate.decide("p1", "d1", True)
    assert decision.outcome == DecisionOutcome.CHALLENGE_REQUIRED
    assert decision.mode == ChallengeMode.ENROLLMENT

    started = gate.begin_enrollment("p1")
    assert len(started.secret) >= 32
    assert len(started.backup_codes) == 8
    assert started.provisioning_uri.startswith("otpauth://totp/")
    assert started.qr_png_base64

    decision = gate.decide("p1", "d1", True)
    assert decision.mode == ChallengeMode.ENROLLMENT_CONFIRMATION

    result = gate.confirm_enrollment("p1", totp_code(started.secret, clock()))
    assert result.success
    credential = gate.store.get_credential("p1")
    assert credential.confirmed is True
    assert credential.confirmed_at == clock()
    assert "enrollment.confirmed" in audit_kinds(gate, "p1")


def test_stored_credential_holds_no_plaintext(gate):
    started = gate.begin_enrollment("p1")
    credential = gate.store.get_credential("p1")
    assert credential.confirmed is False
    assert started.secret not in credential.secret_encrypted
    hashes = [c.code_hash for c in credential.backup_codes]
    assert len(hashes) == 8
    for code in started.backup_codes:
        assert all(code not in h and code.replace("-", "") not in h for h in hashes)


def test_confirmed_credential_requires_explicit_replace(gate, clock):
    enroll_and_confirm(gate, clock, "p1")
    with pytest.raises(AlreadyEnrolled):
        gate.begin_enrollment("p1")
    assert gate.store.get_credential("p1").confirmed is True


def test_pending_credential_is_silently_replaced(gate):
    first = gate.begin_enrollment("p1")
    second = gate.begin_enrollment("p1")
    assert first.secret != second.secret
    assert second.replaced is False
    assert gate.store.get_credential("p1").confirmed is False


def test_replacing_confirmed_credential_ends_all_sessions(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    assert gate.verify_code("p1", totp_code(secret, clock()), device_fingerprint="laptop").success
    gate.issue_session("p1", "phone")

    started = gate.begin_enrollment("p1", replace=True)

    assert started.replaced is True
    assert gate.list_sessions("p1") == []
    assert not gate.is_session_valid("p1", "laptop")
    credential = gate.store.get_credential("p1")
    assert credential.confirmed is False
    kinds = audit_kinds(gate, "p1")
    assert "enrollment.replaced" in kinds
    assert "session.invalidated_all" in kinds


def test_failed_confirmation_never_locks(gate, clock):
    started = gate.begin_enrollment("p1")
    for _ in range(5):
        result = gate.confirm_enrollment("p1", wrong_code(started.secret, clock()))
        assert result.reason == VerificationReason.INVALID_CODE
        assert result.remaining_attempts is None
    assert gate.lock_status("p1").locked is False
    assert gate.store.get_lockout("p1").consecutive_failures == 0
    assert gate.store.get_credential("p1").confirmed is False

    assert gate.confirm_enrollment("p1", totp_code(started.secret, clock())).success
    assert "enrollment.confirm_failed" in audit_kinds(gate, "p1")


def test_backup_code_cannot_confirm_enrollment(gate):
    started = gate.begin_enrollment("p1")
    result = gate.confirm_enrollment("p1", started.backup_codes[0])
    assert not result.success
    credential = gate.store.get_credential("p1")
    assert credential.confirmed is False
    assert len(credential.usable_backup_codes) == 8


def test_confirm_without_enrollment(gate):
    with pytest.raises(NotEnrolled):
        gate.confirm_enrollment("nobody", "123456")


def test_confirm_twice(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    with pytest.raises(AlreadyEnrolled):
        gate.confirm_enrollment("p1", totp_code(secret, clock()))


def test_confirm_issues_session_for_device(gate, clock):
    started = gate.begin_enrollment("p1")
    result = gate.confirm_enrollment("p1", totp_code(started.secret, clock()), device_fingerprint="d1")
    assert result.issued_session is not None
    assert gate.decide("p1", "d1", True).outcome == DecisionOutcome.ALLOW


def test_regenerate_backup_codes_invalidates_previous(gate, clock):
    secret, old_codes = enroll_and_confirm(gate, clock, "p1")
    new_codes = gate.regenerate_backup_codes("p1")
    assert len(new_codes) == 8
    assert set(new_codes).isdisjoint(old_codes)

    assert not gate.verify_code("p1", old_codes[0]).success
    assert gate.verify_code("p1", new_codes[0]).success
    assert gate.remaining_backup_codes("p1") == 7
    assert "enrollment.backup_codes_regenerated" in audit_kinds(gate, "p1")


def test_regenerate_requires_confirmed_credential(gate):
    gate.begin_enrollment("p1")
    with pytest.raises(NotEnrolled):
        gate.regenerate_backup_codes("p1")


def test_remaining_backup_codes_not_enrolled(gate):
    with pytest.raises(NotEnrolled):
        gate.remaining_backup_codes("nobody")


def test_reset_credential_clears_everything(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    gate.verify_code("p1", wrong_code(secret, clock()))
    gate.issue_session("p1", "d1")

    assert gate.reset_credential("p1", actor="admin") is True

    assert gate.store.get_credential("p1") is None
    assert gate.store.get_lockout("p1").consecutive_failures == 0
    assert gate.list_sessions("p1") == []
    assert gate.decide("p1", "d1", True).mode == ChallengeMode.ENROLLMENT
    assert "enrollment.credential_reset" in audit_kinds(gate, "p1")
