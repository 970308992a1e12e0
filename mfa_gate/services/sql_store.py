"""SQLAlchemy implementation of the credential store."""
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from mfa_gate.core.errors import AlreadyEnrolled, StorageUnavailable
from mfa_gate.core.locks import PrincipalLocks
from mfa_gate.core.time import ensure_aware
from mfa_gate.models import BackupCode, EmergencyBypassGrant, LockoutRecord, MFASession, TOTPCredential
from mfa_gate.schemas.records import (
    BackupCodeRecord,
    BypassGrantRecord,
    CleanupReport,
    CredentialRecord,
    LockoutState,
    SessionRecord,
)

from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


def _credential_record(row: TOTPCredential) -> CredentialRecord:
    return CredentialRecord(
        principal_id=row.principal_id,
        secret_encrypted=row.secret_encrypted,
        enrolled_at=ensure_aware(row.enrolled_at_utc),
        confirmed=row.confirmed,
        confirmed_at=ensure_aware(row.confirmed_at_utc),
        last_used_step=row.last_used_step,
        backup_codes=[
            BackupCodeRecord(id=c.id, code_hash=c.code_hash, consumed_at=ensure_aware(c.consumed_at_utc))
            for c in row.backup_codes
        ],
    )


def _lockout_state(row: LockoutRecord) -> LockoutState:
    return LockoutState(
        principal_id=row.principal_id,
        consecutive_failures=row.consecutive_failures,
        locked_until=ensure_aware(row.locked_until_utc),
        last_failure_at=ensure_aware(row.last_failure_at_utc),
    )


def _session_record(row: MFASession) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        principal_id=row.principal_id,
        device_fingerprint=row.device_fingerprint,
        issued_at=ensure_aware(row.issued_at_utc),
        expires_at=ensure_aware(row.expires_at_utc),
        verified=row.verified,
    )


def _grant_record(row: EmergencyBypassGrant) -> BypassGrantRecord:
    return BypassGrantRecord(
        principal_id=row.principal_id,
        granted_at=ensure_aware(row.granted_at_utc),
        expires_at=ensure_aware(row.expires_at_utc),
        reason=row.reason,
        granted_by=row.granted_by,
    )


class SqlCredentialStore(CredentialStore):
    """
    Durable store on any SQLAlchemy engine.

    Each operation runs in its own transaction under the principal's process
    lock; rows being modified are selected FOR UPDATE where the engine
    supports it, so concurrent workers serialise on the row.
    """

    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory
        self._locks = PrincipalLocks()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        db = self.Session()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Credential store operation failed: {exc}")
            raise StorageUnavailable() from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _credential_row(self, db: Session, principal_id: str, lock: bool = False) -> Optional[TOTPCredential]:
        query = db.query(TOTPCredential).filter(TOTPCredential.principal_id == principal_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    # credentials

    def get_credential(self, principal_id: str) -> Optional[CredentialRecord]:
        with self._transaction() as db:
            row = self._credential_row(db, principal_id)
            return _credential_record(row) if row else None

    def put_credential(self, record: CredentialRecord, replace_confirmed: bool = True) -> Optional[CredentialRecord]:
        with self._locks.hold(record.principal_id), self._transaction() as db:
            existing = self._credential_row(db, record.principal_id, lock=True)
            previous = None
            if existing:
                if existing.confirmed and not replace_confirmed:
                    raise AlreadyEnrolled()
                previous = _credential_record(existing)
                db.delete(existing)
                db.flush()
            row = TOTPCredential(
                principal_id=record.principal_id,
                secret_encrypted=record.secret_encrypted,
                confirmed=record.confirmed,
                enrolled_at_utc=record.enrolled_at,
                confirmed_at_utc=record.confirmed_at,
                last_used_step=record.last_used_step,
            )
            row.backup_codes = [
                BackupCode(id=c.id, code_hash=c.code_hash, consumed_at_utc=c.consumed_at, created_at_utc=record.enrolled_at)
                for c in record.backup_codes
            ]
            db.add(row)
            return previous

    def delete_credential(self, principal_id: str) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = self._credential_row(db, principal_id, lock=True)
            if not row:
                return False
            db.delete(row)
            return True

    def set_confirmed(self, principal_id: str, at: datetime) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = self._credential_row(db, principal_id, lock=True)
            if not row or row.confirmed:
                return False
            row.confirmed = True
            row.confirmed_at_utc = at
            return True

    def replace_backup_codes(self, principal_id: str, code_hashes: List[str], at: datetime) -> None:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = self._credential_row(db, principal_id, lock=True)
            if not row:
                return
            row.backup_codes = [BackupCode(code_hash=h, created_at_utc=at) for h in code_hashes]

    def consume_backup_code(self, principal_id: str, code_id: str, at: datetime) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            updated = (
                db.query(BackupCode)
                .filter(
                    BackupCode.id == code_id,
                    BackupCode.principal_id == principal_id,
                    BackupCode.consumed_at_utc.is_(None),
                )
                .update({BackupCode.consumed_at_utc: at}, synchronize_session=False)
            )
            return updated == 1

    def claim_totp_step(self, principal_id: str, step: int) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            updated = (
                db.query(TOTPCredential)
                .filter(
                    TOTPCredential.principal_id == principal_id,
                    (TOTPCredential.last_used_step.is_(None)) | (TOTPCredential.last_used_step < step),
                )
                .update({TOTPCredential.last_used_step: step}, synchronize_session=False)
            )
            return updated == 1

    # lockouts

    def get_lockout(self, principal_id: str) -> LockoutState:
        with self._transaction() as db:
            row = db.get(LockoutRecord, principal_id)
            return _lockout_state(row) if row else LockoutState(principal_id=principal_id)

    def increment_failures(
        self, principal_id: str, now: datetime, threshold: int, lock_for: timedelta
    ) -> Tuple[LockoutState, bool]:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = (
                db.query(LockoutRecord)
                .filter(LockoutRecord.principal_id == principal_id)
                .with_for_update()
                .first()
            )
            if row is None:
                row = LockoutRecord(principal_id=principal_id, consecutive_failures=0)
                db.add(row)
            locked_until = ensure_aware(row.locked_until_utc)
            if locked_until is not None and now >= locked_until:
                row.consecutive_failures = 0
                row.locked_until_utc = None
                locked_until = None
            row.consecutive_failures = (row.consecutive_failures or 0) + 1
            row.last_failure_at_utc = now
            engaged = False
            if row.consecutive_failures >= threshold and locked_until is None:
                row.locked_until_utc = now + lock_for
                engaged = True
            db.flush()
            return _lockout_state(row), engaged

    def reset_lockout(self, principal_id: str) -> LockoutState:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = (
                db.query(LockoutRecord)
                .filter(LockoutRecord.principal_id == principal_id)
                .with_for_update()
                .first()
            )
            if row is None:
                return LockoutState(principal_id=principal_id)
            previous = _lockout_state(row)
            db.delete(row)
            return previous

    def clear_elapsed_lock(self, principal_id: str, now: datetime) -> Optional[LockoutState]:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = (
                db.query(LockoutRecord)
                .filter(
                    LockoutRecord.principal_id == principal_id,
                    LockoutRecord.locked_until_utc.isnot(None),
                    LockoutRecord.locked_until_utc <= now,
                )
                .with_for_update()
                .first()
            )
            if row is None:
                return None
            previous = _lockout_state(row)
            db.delete(row)
            return previous

    # sessions

    def _session_row(self, db: Session, principal_id: str, device_fingerprint: str, lock: bool = False):
        query = db.query(MFASession).filter(
            MFASession.principal_id == principal_id,
            MFASession.device_fingerprint == device_fingerprint,
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def upsert_session(
        self, principal_id: str, device_fingerprint: str, issued_at: datetime, expires_at: datetime
    ) -> Tuple[SessionRecord, bool]:
        with self._locks.hold(principal_id), self._transaction() as db:
            row = self._session_row(db, principal_id, device_fingerprint, lock=True)
            created = row is None
            if created:
                row = MFASession(principal_id=principal_id, device_fingerprint=device_fingerprint)
                db.add(row)
            row.issued_at_utc = issued_at
            row.expires_at_utc = expires_at
            row.verified = True
            db.flush()
            return _session_record(row), created

    def get_session(self, principal_id: str, device_fingerprint: str) -> Optional[SessionRecord]:
        with self._transaction() as db:
            row = self._session_row(db, principal_id, device_fingerprint)
            return _session_record(row) if row else None

    def list_sessions(self, principal_id: str) -> List[SessionRecord]:
        with self._transaction() as db:
            rows = (
                db.query(MFASession)
                .filter(MFASession.principal_id == principal_id)
                .order_by(MFASession.issued_at_utc)
                .all()
            )
            return [_session_record(r) for r in rows]

    def expire_session(self, principal_id: str, device_fingerprint: str, now: datetime) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            updated = (
                db.query(MFASession)
                .filter(
                    MFASession.principal_id == principal_id,
                    MFASession.device_fingerprint == device_fingerprint,
                    MFASession.verified.is_(True),
                    MFASession.expires_at_utc <= now,
                )
                .update({MFASession.verified: False}, synchronize_session=False)
            )
            return updated == 1

    def delete_session(self, principal_id: str, device_fingerprint: str) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            deleted = (
                db.query(MFASession)
                .filter(
                    MFASession.principal_id == principal_id,
                    MFASession.device_fingerprint == device_fingerprint,
                )
                .delete(synchronize_session=False)
            )
            return deleted > 0

    def delete_sessions(self, principal_id: str) -> int:
        with self._locks.hold(principal_id), self._transaction() as db:
            return (
                db.query(MFASession)
                .filter(MFASession.principal_id == principal_id)
                .delete(synchronize_session=False)
            )

    # bypass grants

    def put_bypass_grant(self, record: BypassGrantRecord) -> None:
        with self._locks.hold(record.principal_id), self._transaction() as db:
            row = db.get(EmergencyBypassGrant, record.principal_id, with_for_update=True)
            if row is None:
                row = EmergencyBypassGrant(principal_id=record.principal_id)
                db.add(row)
            row.granted_at_utc = record.granted_at
            row.expires_at_utc = record.expires_at
            row.reason = record.reason
            row.granted_by = record.granted_by

    def get_bypass_grant(self, principal_id: str) -> Optional[BypassGrantRecord]:
        with self._transaction() as db:
            row = db.get(EmergencyBypassGrant, principal_id)
            return _grant_record(row) if row else None

    def delete_bypass_grant(self, principal_id: str, expired_before: Optional[datetime] = None) -> bool:
        with self._locks.hold(principal_id), self._transaction() as db:
            query = db.query(EmergencyBypassGrant).filter(EmergencyBypassGrant.principal_id == principal_id)
            if expired_before is not None:
                query = query.filter(EmergencyBypassGrant.expires_at_utc <= expired_before)
            return query.delete(synchronize_session=False) > 0

    # hygiene

    def purge_expired(self, now: datetime, pending_before: datetime) -> CleanupReport:
        with self._transaction() as db:
            report = CleanupReport()
            report.sessions = (
                db.query(MFASession).filter(MFASession.expires_at_utc <= now).delete(synchronize_session=False)
            )
            report.bypass_grants = (
                db.query(EmergencyBypassGrant)
                .filter(EmergencyBypassGrant.expires_at_utc <= now)
                .delete(synchronize_session=False)
            )
            report.lockouts = (
                db.query(LockoutRecord)
                .filter(LockoutRecord.locked_until_utc.isnot(None), LockoutRecord.locked_until_utc <= now)
                .delete(synchronize_session=False)
            )
            stale = (
                db.query(TOTPCredential)
                .filter(TOTPCredential.confirmed.is_(False), TOTPCredential.enrolled_at_utc < pending_before)
                .all()
            )
            for row in stale:
                db.delete(row)
            report.pending_credentials = len(stale)
            return report

    def ping(self) -> None:
        with self._transaction() as db:
            # touches a real table so an unmigrated schema reports unavailable
            db.query(TOTPCredential.principal_id).limit(1).all()
