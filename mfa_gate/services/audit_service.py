import enum
import json
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from mfa_gate.core.errors import StorageUnavailable
from mfa_gate.core.time import Clock, ensure_aware, utcnow
from mfa_gate.models import AuditEvent
from mfa_gate.schemas.records import AuditRecord

logger = logging.getLogger(__name__)


class AuditKind(str, enum.Enum):
    ENROLLMENT_STARTED = "enrollment.started"
    ENROLLMENT_REPLACED = "enrollment.replaced"
    ENROLLMENT_CONFIRMED = "enrollment.confirmed"
    ENROLLMENT_CONFIRM_FAILED = "enrollment.confirm_failed"
    BACKUP_CODES_REGENERATED = "enrollment.backup_codes_regenerated"
    CREDENTIAL_RESET = "enrollment.credential_reset"
    VERIFICATION_SUCCEEDED = "verification.succeeded"
    VERIFICATION_FAILED = "verification.failed"
    VERIFICATION_BLOCKED = "verification.blocked_locked"
    LOCKOUT_ENGAGED = "lockout.engaged"
    LOCKOUT_CLEARED = "lockout.cleared"
    SESSION_ISSUED = "session.issued"
    SESSION_REFRESHED = "session.refreshed"
    SESSION_EXPIRED = "session.expired"
    SESSION_INVALIDATED = "session.invalidated"
    SESSIONS_INVALIDATED = "session.invalidated_all"
    BYPASS_GRANTED = "bypass.granted"
    BYPASS_DENIED = "bypass.denied"
    BYPASS_USED = "bypass.used"
    BYPASS_REVOKED = "bypass.revoked"
    BYPASS_EXPIRED = "bypass.expired"
    CLEANUP = "maintenance.cleanup"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INFO = "info"


class AuditSink(Protocol):
    def record_audit_event(
        self, kind: AuditKind, principal_id: Optional[str], outcome: AuditOutcome, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        ...


def _normalize_details(details: Any) -> str | None:
    if details is None:
        return None
    if isinstance(details, str):
        return json.dumps({"message": details})
    try:
        return json.dumps(details, default=str)
    except TypeError:
        return json.dumps({"repr": repr(details)})


def log_audit(
    db: Session,
    kind: AuditKind,
    principal_id: str | None,
    outcome: AuditOutcome,
    details: Any = None,
    at=None,
) -> AuditEvent:
    entry = AuditEvent(
        at_utc=at or utcnow(),
        kind=AuditKind(kind).value,
        principal_id=principal_id,
        outcome=AuditOutcome(outcome).value,
        details=_normalize_details(details),
    )
    db.add(entry)
    db.commit()
    return entry


def _log_line(kind: AuditKind, principal_id: Optional[str], outcome: AuditOutcome) -> None:
    level = logging.WARNING if kind.value.startswith("bypass.") or outcome == AuditOutcome.FAILURE else logging.INFO
    logger.log(level, f"AUDIT {kind.value} principal={principal_id} outcome={outcome.value}")


class SqlAuditSink:
    """Writes mfa_audit_events rows; a failed write surfaces as StorageUnavailable."""

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.Session = session_factory
        self.clock = clock

    def record_audit_event(self, kind, principal_id, outcome, metadata=None) -> None:
        kind, outcome = AuditKind(kind), AuditOutcome(outcome)
        db = self.Session()
        try:
            log_audit(db, kind, principal_id, outcome, metadata, at=self.clock())
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to write audit event {kind.value} for {principal_id}: {exc}")
            raise StorageUnavailable() from exc
        finally:
            db.close()
        _log_line(kind, principal_id, outcome)

    def list_events(
        self,
        principal_id: Optional[str] = None,
        kind_prefix: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[List[AuditRecord], int]:
        db = self.Session()
        try:
            qs = db.query(AuditEvent)
            if principal_id:
                qs = qs.filter(AuditEvent.principal_id == principal_id)
            if kind_prefix:
                qs = qs.filter(AuditEvent.kind.like(f"{kind_prefix}%"))
            total = qs.count()
            page = max(1, page)
            page_size = max(1, min(page_size, 100))
            rows = (
                qs.order_by(AuditEvent.at_utc.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
                .all()
            )
            return [_audit_record(r) for r in rows], total
        except SQLAlchemyError as exc:
            raise StorageUnavailable() from exc
        finally:
            db.close()


def _audit_record(row: AuditEvent) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        at=ensure_aware(row.at_utc),
        kind=row.kind,
        principal_id=row.principal_id,
        outcome=row.outcome,
        metadata=json.loads(row.details) if row.details else {},
    )


class MemoryAuditSink:
    """Append-only in-process audit trail for the memory store backend."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._lock = threading.Lock()
        self._events: List[AuditRecord] = []

    def record_audit_event(self, kind, principal_id, outcome, metadata=None) -> None:
        kind, outcome = AuditKind(kind), AuditOutcome(outcome)
        record = AuditRecord(
            id=str(uuid.uuid4()),
            at=self.clock(),
            kind=kind.value,
            principal_id=principal_id,
            outcome=outcome.value,
            metadata=json.loads(_normalize_details(metadata) or "{}"),
        )
        with self._lock:
            self._events.append(record)
        _log_line(kind, principal_id, outcome)

    def list_events(
        self,
        principal_id: Optional[str] = None,
        kind_prefix: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[List[AuditRecord], int]:
        with self._lock:
            events = list(self._events)
        if principal_id:
            events = [e for e in events if e.principal_id == principal_id]
        if kind_prefix:
            events = [e for e in events if e.kind.startswith(kind_prefix)]
        events.reverse()
        page = max(1, page)
        page_size = max(1, min(page_size, 100))
        start = (page - 1) * page_size
        return events[start:start + page_size], len(events)
