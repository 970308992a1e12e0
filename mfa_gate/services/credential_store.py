"""
Credential Store
================

Keyed storage for TOTP credentials, backup codes, lockout records, MFA
sessions and bypass grants. Every mutating operation is atomic per principal:
callers never perform read-modify-write sequences on records themselves.

Two backends ship with the gate:
- SqlCredentialStore (sql_store.py): SQLAlchemy, the durable primary store
- MemoryCredentialStore: process-local, for single-node/dev setups and tests
"""
import copy
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from mfa_gate.core.errors import AlreadyEnrolled
from mfa_gate.core.locks import PrincipalLocks
from mfa_gate.schemas.records import (
    BackupCodeRecord,
    BypassGrantRecord,
    CleanupReport,
    CredentialRecord,
    LockoutState,
    SessionRecord,
)


class CredentialStore(ABC):
    """Operations every persistence backend must support. Failures raise StorageUnavailable."""

    # true only when every reader and writer of the store lives in this process
    process_local = False

    # credentials

    @abstractmethod
    def get_credential(self, principal_id: str) -> Optional[CredentialRecord]:
        ...

    @abstractmethod
    def put_credential(self, record: CredentialRecord, replace_confirmed: bool = True) -> Optional[CredentialRecord]:
        """
        Create or fully replace a credential, backup codes included.

        Returns the credential that was replaced, if any. With
        replace_confirmed=False an existing confirmed credential is left alone
        and AlreadyEnrolled is raised.
        """

    @abstractmethod
    def delete_credential(self, principal_id: str) -> bool:
        ...

    @abstractmethod
    def set_confirmed(self, principal_id: str, at: datetime) -> bool:
        """Flip confirmed to True. Returns False if it already was (or no credential)."""

    @abstractmethod
    def replace_backup_codes(self, principal_id: str, code_hashes: List[str], at: datetime) -> None:
        ...

    @abstractmethod
    def consume_backup_code(self, principal_id: str, code_id: str, at: datetime) -> bool:
        """Test-and-remove: True only for the single caller that consumed the code."""

    @abstractmethod
    def claim_totp_step(self, principal_id: str, step: int) -> bool:
        """Advance last_used_step to step if step is newer. False means replay."""

    # lockouts

    @abstractmethod
    def get_lockout(self, principal_id: str) -> LockoutState:
        ...

    @abstractmethod
    def increment_failures(
        self, principal_id: str, now: datetime, threshold: int, lock_for: timedelta
    ) -> Tuple[LockoutState, bool]:
        """
        Count one failure.

        An elapsed lock is cleared before counting. Returns the new state and
        whether this increment engaged the lock.
        """

    @abstractmethod
    def reset_lockout(self, principal_id: str) -> LockoutState:
        """Zero the counter and clear the lock. Returns the state before the reset."""

    @abstractmethod
    def clear_elapsed_lock(self, principal_id: str, now: datetime) -> Optional[LockoutState]:
        """Reset the record only if its lock has elapsed. Returns the cleared state, else None."""

    # sessions

    @abstractmethod
    def upsert_session(
        self, principal_id: str, device_fingerprint: str, issued_at: datetime, expires_at: datetime
    ) -> Tuple[SessionRecord, bool]:
        """Issue or refresh the (principal, device) session. Returns (session, created)."""

    @abstractmethod
    def get_session(self, principal_id: str, device_fingerprint: str) -> Optional[SessionRecord]:
        ...

    @abstractmethod
    def list_sessions(self, principal_id: str) -> List[SessionRecord]:
        ...

    @abstractmethod
    def expire_session(self, principal_id: str, device_fingerprint: str, now: datetime) -> bool:
        """Mark an elapsed session unverified. True only for the call that did it."""

    @abstractmethod
    def delete_session(self, principal_id: str, device_fingerprint: str) -> bool:
        ...

    @abstractmethod
    def delete_sessions(self, principal_id: str) -> int:
        ...

    # bypass grants

    @abstractmethod
    def put_bypass_grant(self, record: BypassGrantRecord) -> None:
        ...

    @abstractmethod
    def get_bypass_grant(self, principal_id: str) -> Optional[BypassGrantRecord]:
        ...

    @abstractmethod
    def delete_bypass_grant(self, principal_id: str, expired_before: Optional[datetime] = None) -> bool:
        """Delete the grant; with expired_before, only if it expired at or before that instant."""

    # hygiene

    @abstractmethod
    def purge_expired(self, now: datetime, pending_before: datetime) -> CleanupReport:
        """Drop expired sessions and grants, elapsed lockouts and stale unconfirmed credentials."""

    @abstractmethod
    def ping(self) -> None:
        ...


class MemoryCredentialStore(CredentialStore):
    """Process-local store. Records are copied in and out so callers never share state."""

    process_local = True

    def __init__(self) -> None:
        self._locks = PrincipalLocks()
        self._credentials: Dict[str, CredentialRecord] = {}
        self._lockouts: Dict[str, LockoutState] = {}
        self._sessions: Dict[Tuple[str, str], SessionRecord] = {}
        self._grants: Dict[str, BypassGrantRecord] = {}

    def get_credential(self, principal_id: str) -> Optional[CredentialRecord]:
        with self._locks.hold(principal_id):
            return copy.deepcopy(self._credentials.get(principal_id))

    def put_credential(self, record: CredentialRecord, replace_confirmed: bool = True) -> Optional[CredentialRecord]:
        with self._locks.hold(record.principal_id):
            previous = self._credentials.get(record.principal_id)
            if previous is not None and previous.confirmed and not replace_confirmed:
                raise AlreadyEnrolled()
            self._credentials[record.principal_id] = copy.deepcopy(record)
            return previous

    def delete_credential(self, principal_id: str) -> bool:
        with self._locks.hold(principal_id):
            return self._credentials.pop(principal_id, None) is not None

    def set_confirmed(self, principal_id: str, at: datetime) -> bool:
        with self._locks.hold(principal_id):
            record = self._credentials.get(principal_id)
            if record is None or record.confirmed:
                return False
            record.confirmed = True
            record.confirmed_at = at
            return True

    def replace_backup_codes(self, principal_id: str, code_hashes: List[str], at: datetime) -> None:
        with self._locks.hold(principal_id):
            record = self._credentials.get(principal_id)
            if record is None:
                return
            record.backup_codes = [BackupCodeRecord(id=str(uuid.uuid4()), code_hash=h) for h in code_hashes]

    def consume_backup_code(self, principal_id: str, code_id: str, at: datetime) -> bool:
        with self._locks.hold(principal_id):
            record = self._credentials.get(principal_id)
            if record is None:
                return False
            for code in record.backup_codes:
                if code.id == code_id and not code.consumed:
                    code.consumed_at = at
                    return True
            return False

    def claim_totp_step(self, principal_id: str, step: int) -> bool:
        with self._locks.hold(principal_id):
            record = self._credentials.get(principal_id)
            if record is None:
                return False
            if record.last_used_step is not None and step <= record.last_used_step:
                return False
            record.last_used_step = step
            return True

    def get_lockout(self, principal_id: str) -> LockoutState:
        with self._locks.hold(principal_id):
            state = self._lockouts.get(principal_id)
            return copy.deepcopy(state) if state else LockoutState(principal_id=principal_id)

    def increment_failures(
        self, principal_id: str, now: datetime, threshold: int, lock_for: timedelta
    ) -> Tuple[LockoutState, bool]:
        with self._locks.hold(principal_id):
            state = self._lockouts.setdefault(principal_id, LockoutState(principal_id=principal_id))
            if state.locked_until is not None and now >= state.locked_until:
                state.consecutive_failures = 0
                state.locked_until = None
            state.consecutive_failures += 1
            state.last_failure_at = now
            engaged = False
            if state.consecutive_failures >= threshold and state.locked_until is None:
                state.locked_until = now + lock_for
                engaged = True
            return copy.deepcopy(state), engaged

    def reset_lockout(self, principal_id: str) -> LockoutState:
        with self._locks.hold(principal_id):
            previous = self._lockouts.pop(principal_id, None)
            return previous or LockoutState(principal_id=principal_id)

    def clear_elapsed_lock(self, principal_id: str, now: datetime) -> Optional[LockoutState]:
        with self._locks.hold(principal_id):
            state = self._lockouts.get(principal_id)
            if state is None or state.locked_until is None or now < state.locked_until:
                return None
            return self._lockouts.pop(principal_id)

    def upsert_session(
        self, principal_id: str, device_fingerprint: str, issued_at: datetime, expires_at: datetime
    ) -> Tuple[SessionRecord, bool]:
        with self._locks.hold(principal_id):
            key = (principal_id, device_fingerprint)
            existing = self._sessions.get(key)
            if existing is None:
                existing = SessionRecord(
                    id=str(uuid.uuid4()),
                    principal_id=principal_id,
                    device_fingerprint=device_fingerprint,
                    issued_at=issued_at,
                    expires_at=expires_at,
                )
                self._sessions[key] = existing
                return copy.deepcopy(existing), True
            existing.issued_at = issued_at
            existing.expires_at = expires_at
            existing.verified = True
            return copy.deepcopy(existing), False

    def get_session(self, principal_id: str, device_fingerprint: str) -> Optional[SessionRecord]:
        with self._locks.hold(principal_id):
            return copy.deepcopy(self._sessions.get((principal_id, device_fingerprint)))

    def list_sessions(self, principal_id: str) -> List[SessionRecord]:
        with self._locks.hold(principal_id):
            found = [s for (pid, _), s in self._sessions.items() if pid == principal_id]
            return sorted((copy.deepcopy(s) for s in found), key=lambda s: s.issued_at)

    def expire_session(self, principal_id: str, device_fingerprint: str, now: datetime) -> bool:
        with self._locks.hold(principal_id):
            session = self._sessions.get((principal_id, device_fingerprint))
            if session is None or not session.verified or now < session.expires_at:
                return False
            session.verified = False
            return True

    def delete_session(self, principal_id: str, device_fingerprint: str) -> bool:
        with self._locks.hold(principal_id):
            return self._sessions.pop((principal_id, device_fingerprint), None) is not None

    def delete_sessions(self, principal_id: str) -> int:
        with self._locks.hold(principal_id):
            keys = [key for key in self._sessions if key[0] == principal_id]
            for key in keys:
                del self._sessions[key]
            return len(keys)

    def put_bypass_grant(self, record: BypassGrantRecord) -> None:
        with self._locks.hold(record.principal_id):
            self._grants[record.principal_id] = copy.deepcopy(record)

    def get_bypass_grant(self, principal_id: str) -> Optional[BypassGrantRecord]:
        with self._locks.hold(principal_id):
            return copy.deepcopy(self._grants.get(principal_id))

    def delete_bypass_grant(self, principal_id: str, expired_before: Optional[datetime] = None) -> bool:
        with self._locks.hold(principal_id):
            grant = self._grants.get(principal_id)
            if grant is None:
                return False
            if expired_before is not None and grant.expires_at > expired_before:
                return False
            del self._grants[principal_id]
            return True

    def purge_expired(self, now: datetime, pending_before: datetime) -> CleanupReport:
        report = CleanupReport()
        for key in [k for k, s in list(self._sessions.items()) if now >= s.expires_at]:
            with self._locks.hold(key[0]):
                session = self._sessions.get(key)
                if session is not None and now >= session.expires_at:
                    del self._sessions[key]
                    report.sessions += 1
        for pid in [p for p, g in list(self._grants.items()) if now >= g.expires_at]:
            if self.delete_bypass_grant(pid, expired_before=now):
                report.bypass_grants += 1
        for pid, state in list(self._lockouts.items()):
            with self._locks.hold(pid):
                if state.locked_until is not None and now >= state.locked_until:
                    self._lockouts.pop(pid, None)
                    report.lockouts += 1
        for pid, record in list(self._credentials.items()):
            with self._locks.hold(pid):
                if not record.confirmed and record.enrolled_at < pending_before:
                    self._credentials.pop(pid, None)
                    report.pending_credentials += 1
        return report

    def ping(self) -> None:
        return None
