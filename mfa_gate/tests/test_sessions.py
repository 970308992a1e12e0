from datetime import timedelta

from mfa_gate.core import security
from mfa_gate.schemas.records import AllowedVia, ChallengeMode, DecisionOutcome, SessionRecord, SessionSource
from mfa_gate.services.audit_service import SqlAuditSink
from mfa_gate.services.collaborators import SettingsMFAPolicy
from mfa_gate.services.gate import MFAGate
from mfa_gate.services.session_service import SessionCache
from mfa_gate.services.sql_store import SqlCredentialStore
from mfa_gate.tests.helpers import audit_kinds, enroll_and_confirm, totp_code


def test_issue_session_ttl_and_token(gate, clock):
    issued = gate.issue_session("p1", "d1")
    assert issued.created is True
    assert issued.session.expires_at == clock() + timedelta(hours=8)
    assert issued.session.verified is True

    payload = security.decode_session_token(issued.token)
    assert payload["sub"] == "p1"
    assert payload["dev"] == "d1"
    assert payload["sid"] == issued.session.id
    assert gate.sessions.session_from_token(issued.token).id == issued.session.id


def test_reissue_refreshes_same_record(gate, clock):
    first = gate.issue_session("p1", "d1")
    clock.advance(hours=2)
    second = gate.issue_session("p1", "d1")
    assert second.created is False
    assert second.session.id == first.session.id
    assert second.session.expires_at == clock() + timedelta(hours=8)
    kinds = audit_kinds(gate, "p1", "session.")
    assert "session.issued" in kinds and "session.refreshed" in kinds


def test_sessions_are_per_device(gate, clock):
    gate.issue_session("p1", "d1")
    clock.advance(hours=4)
    gate.issue_session("p1", "d2")
    clock.advance(hours=4)

    assert not gate.is_session_valid("p1", "d1")
    assert gate.is_session_valid("p1", "d2")
    assert not gate.is_session_valid("p2", "d2")


def test_expired_session_stays_known_device(gate, clock):
    gate.issue_session("p1", "d1")
    gate.issue_session("p1", "d2")
    clock.advance(hours=8)
    gate.issue_session("p1", "d2")

    assert not gate.is_session_valid("p1", "d1")
    sessions = {s.device_fingerprint: s for s in gate.list_sessions("p1")}
    assert sessions["d1"].verified is False
    assert sessions["d2"].verified is True

    status = gate.device_status("p1")
    assert (status.verified_devices, status.known_devices) == (1, 2)
    assert status.label == "1 of 2 known devices verified"

    expired, _ = gate.audit.list_events(principal_id="p1", kind_prefix="session.expired")
    assert len(expired) == 1


def test_session_valid_until_exact_expiry(gate, clock):
    gate.issue_session("p1", "d1")
    clock.advance(hours=8, seconds=-1)
    assert gate.is_session_valid("p1", "d1")
    clock.advance(seconds=1)
    assert not gate.is_session_valid("p1", "d1")


def test_cached_reads_report_fallback_source(memory_gate):
    memory_gate.issue_session("p1", "d1")
    first = memory_gate.sessions.check_session("p1", "d1")
    assert first.source_of_truth == SessionSource.PRIMARY_STORE
    second = memory_gate.sessions.check_session("p1", "d1")
    assert second.source_of_truth == SessionSource.CACHED_FALLBACK


def test_shared_store_reads_bypass_local_cache(sql_gate):
    assert sql_gate.sessions.cache is None
    sql_gate.issue_session("p1", "d1")
    sql_gate.sessions.check_session("p1", "d1")
    assert sql_gate.sessions.check_session("p1", "d1").source_of_truth == SessionSource.PRIMARY_STORE


def test_logout_on_one_worker_is_seen_by_another(settings, clock, allowlist, session_factory):
    def worker():
        return MFAGate(
            SqlCredentialStore(session_factory),
            SqlAuditSink(session_factory, clock),
            settings=settings,
            clock=clock,
            policy=SettingsMFAPolicy(settings),
            allowlist=allowlist,
        )

    worker_a, worker_b = worker(), worker()
    secret, _ = enroll_and_confirm(worker_a, clock, "p1")
    assert worker_a.verify_code("p1", totp_code(secret, clock()), device_fingerprint="d1").success
    assert worker_a.decide("p1", "d1", True).via == AllowedVia.SESSION
    assert worker_a.decide("p1", "d1", True).via == AllowedVia.SESSION

    assert worker_b.invalidate_all("p1") == 1
    decision = worker_a.decide("p1", "d1", True)
    assert decision.outcome == DecisionOutcome.CHALLENGE_REQUIRED
    assert decision.mode == ChallengeMode.VERIFICATION

    worker_b.reset_credential("p1", actor="admin")
    assert worker_a.decide("p1", "d1", True).mode == ChallengeMode.ENROLLMENT


def test_logout_invalidates_cache(gate):
    gate.issue_session("p1", "d1")
    gate.issue_session("p1", "d2")
    assert gate.is_session_valid("p1", "d1")
    assert gate.is_session_valid("p1", "d1")

    assert gate.invalidate_session("p1", "d1") is True
    assert not gate.is_session_valid("p1", "d1")
    assert gate.is_session_valid("p1", "d2")

    assert gate.invalidate_all("p1") == 1
    assert not gate.is_session_valid("p1", "d2")
    assert gate.list_sessions("p1") == []
    assert "session.invalidated_all" in audit_kinds(gate, "p1")


def test_token_for_removed_session_is_rejected(gate):
    issued = gate.issue_session("p1", "d1")
    gate.invalidate_all("p1")
    assert gate.sessions.session_from_token(issued.token) is None
    assert gate.sessions.session_from_token("not-a-token") is None


def test_cache_ignores_puts_after_invalidation(clock):
    cache = SessionCache(60, clock)
    record = SessionRecord(
        id="s1",
        principal_id="p1",
        device_fingerprint="d1",
        issued_at=clock(),
        expires_at=clock() + timedelta(hours=8),
    )
    generation = cache.generation("p1")
    cache.invalidate("p1")
    assert cache.put(record, generation) is False
    assert cache.get("p1", "d1") is None

    assert cache.put(record, cache.generation("p1")) is True
    assert cache.get("p1", "d1").source_of_truth == SessionSource.CACHED_FALLBACK
    clock.advance(seconds=60)
    assert cache.get("p1", "d1") is None


def test_missing_device_never_matches(gate):
    gate.issue_session("p1", "d1")
    assert not gate.is_session_valid("p1", "")
    assert gate.sessions.check_session("p1", "") is None
