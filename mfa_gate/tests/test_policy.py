from mfa_gate.schemas.records import AllowedVia, ChallengeMode, DecisionOutcome
from mfa_gate.tests.helpers import enroll_and_confirm, totp_code


def test_not_mandatory_allows_regardless_of_enrollment(gate, clock):
    assert gate.decide("p1", "d1", False).via == AllowedVia.NOT_MANDATORY
    gate.begin_enrollment("p1")
    assert gate.decide("p1", "d1", False).outcome == DecisionOutcome.ALLOW
    gate.store.delete_credential("p1")
    enroll_and_confirm(gate, clock, "p1")
    assert gate.decide("p1", None, False).outcome == DecisionOutcome.ALLOW


def test_challenge_modes_follow_credential_state(gate, clock):
    assert gate.decide("p1", "d1", True).mode == ChallengeMode.ENROLLMENT
    started = gate.begin_enrollment("p1")
    assert gate.decide("p1", "d1", True).mode == ChallengeMode.ENROLLMENT_CONFIRMATION
    gate.confirm_enrollment("p1", totp_code(started.secret, clock()))
    assert gate.decide("p1", "d1", True).mode == ChallengeMode.VERIFICATION


def test_valid_session_allows(gate, clock):
    secret, _ = enroll_and_confirm(gate, clock, "p1")
    gate.verify_code("p1", totp_code(secret, clock()), device_fingerprint="d1")
    decision = gate.decide("p1", "d1", True)
    assert decision.outcome == DecisionOutcome.ALLOW
    assert decision.via == AllowedVia.SESSION
    assert decision.session.device_fingerprint == "d1"


def test_policy_collaborator_consulted_when_flag_omitted(memory_gate):
    memory_gate.policy.exempt.add("service-account")
    assert memory_gate.decide("service-account", None).via == AllowedVia.NOT_MANDATORY
    assert memory_gate.decide("p1", None).mode == ChallengeMode.ENROLLMENT


def test_storage_outage_denies(flaky_gate, flaky_store):
    flaky_store.down = True
    decision = flaky_gate.decide("p1", "d1", True)
    assert decision.outcome == DecisionOutcome.DENIED
    assert decision.reason == "storage_unavailable"
    # never allowed, whatever the device
    assert flaky_gate.decide("p1", None, True).outcome == DecisionOutcome.DENIED


def test_transient_storage_error_is_retried_once(flaky_gate, flaky_store):
    flaky_store.fail_next = 1
    decision = flaky_gate.decide("p1", "d1", True)
    assert decision.outcome == DecisionOutcome.CHALLENGE_REQUIRED
    assert decision.mode == ChallengeMode.ENROLLMENT


def test_facade_retries_then_surfaces(flaky_gate, flaky_store):
    import pytest

    from mfa_gate.core.errors import StorageUnavailable

    flaky_store.fail_next = 1
    assert flaky_gate.invalidate_all("p1") == 0

    flaky_store.down = True
    calls_before = flaky_store.calls
    with pytest.raises(StorageUnavailable):
        flaky_gate.invalidate_all("p1")
    assert flaky_store.calls - calls_before == 2


def test_mfa_status_summary(gate, clock):
    secret, codes = enroll_and_confirm(gate, clock, "p1")
    gate.verify_code("p1", codes[0], device_fingerprint="d1")
    gate.issue_session("p1", "d2")

    status = gate.mfa_status("p1", "d1")
    assert status.enrolled and status.confirmed and status.mandatory
    assert status.backup_codes_remaining == 7
    assert status.locked is False
    assert status.remaining_attempts == 3
    assert status.session_valid is True
    assert status.bypass_active is False
    assert status.devices.label == "2 of 2 known devices verified"


def test_mfa_status_does_not_record_bypass_use(gate):
    gate.grant_bypass("p4", "incident-42")
    status = gate.mfa_status("p4")
    assert status.bypass_active is True
    events, _ = gate.audit.list_events(principal_id="p4", kind_prefix="bypass.used")
    assert events == []
