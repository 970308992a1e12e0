"""
Session Lifecycle Manager
=========================

One "MFA verified" session per (principal, device). Sessions are trusted only
while now < expires_at; an elapsed session is marked unverified on the next
read and stays listed as a known device until cleanup.

A short-lived local cache may answer validity checks when the store itself is
process-local; answers from it carry source_of_truth=CachedFallback. Every
issuance, logout and invalidation drops the affected cache entries. Over a
shared store (SQL behind several workers) every check reads the store.
"""
import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import jwt

from mfa_gate.core import security
from mfa_gate.core.config import Settings
from mfa_gate.core.time import Clock, utcnow
from mfa_gate.schemas.records import SessionRecord, SessionSource

from .audit_service import AuditKind, AuditOutcome, AuditSink
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class IssuedSession:
    session: SessionRecord
    token: Optional[str]
    created: bool


@dataclass
class DeviceStatus:
    """Display-only summary; never an authorization input."""

    verified_devices: int
    known_devices: int

    @property
    def label(self) -> str:
        return f"{self.verified_devices} of {self.known_devices} known devices verified"


class SessionCache:
    """
    Per-(principal, device) cache of valid sessions with a short TTL.

    Each principal has a generation counter bumped by every invalidation; a
    record read from the store before an invalidation is not cached after it.
    """

    def __init__(self, ttl_seconds: int, clock: Clock = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], Tuple[SessionRecord, datetime]] = {}
        self._generations: Dict[str, int] = {}

    def generation(self, principal_id: str) -> int:
        with self._lock:
            return self._generations.get(principal_id, 0)

    def get(self, principal_id: str, device_fingerprint: str) -> Optional[SessionRecord]:
        now = self.clock()
        key = (principal_id, device_fingerprint)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            record, cached_until = entry
            if now >= cached_until or not record.is_valid(now):
                del self._entries[key]
                return None
        return dataclasses.replace(record, source_of_truth=SessionSource.CACHED_FALLBACK)

    def put(self, record: SessionRecord, generation: int) -> bool:
        cached_until = min(self.clock() + self.ttl, record.expires_at)
        with self._lock:
            if self._generations.get(record.principal_id, 0) != generation:
                return False
            self._entries[(record.principal_id, record.device_fingerprint)] = (record, cached_until)
            return True

    def invalidate(self, principal_id: str, device_fingerprint: Optional[str] = None) -> None:
        with self._lock:
            self._generations[principal_id] = self._generations.get(principal_id, 0) + 1
            if device_fingerprint is not None:
                self._entries.pop((principal_id, device_fingerprint), None)
                return
            for key in [k for k in self._entries if k[0] == principal_id]:
                del self._entries[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._generations.clear()


class SessionLifecycleManager:
    def __init__(
        self,
        store: CredentialStore,
        audit: AuditSink,
        settings: Settings,
        clock: Clock = utcnow,
        cache: Optional[SessionCache] = None,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.ttl = timedelta(hours=settings.session_ttl_hours)
        self.sign_tokens = bool(settings.jwt_secret)
        # a process-local cache cannot see invalidations made by other workers on a shared store
        if cache is None and settings.session_cache_enabled and store.process_local:
            cache = SessionCache(settings.session_cache_seconds, clock)
        self.cache = cache

    def invalidate_cache(self, principal_id: str, device_fingerprint: Optional[str] = None) -> None:
        if self.cache is not None:
            self.cache.invalidate(principal_id, device_fingerprint)

    def issue_session(self, principal_id: str, device_fingerprint: str) -> IssuedSession:
        """
        Issue (or refresh) the session for one device. Only call this after a
        successful code verification.
        """
        if not device_fingerprint:
            raise ValueError("device_fingerprint is required to issue a session")
        now = self.clock()
        record, created = self.store.upsert_session(principal_id, device_fingerprint, now, now + self.ttl)
        self.invalidate_cache(principal_id, device_fingerprint)

        token = None
        if self.sign_tokens:
            token = security.create_session_token(principal_id, device_fingerprint, record.id, record.expires_at)

        self.audit.record_audit_event(
            AuditKind.SESSION_ISSUED if created else AuditKind.SESSION_REFRESHED,
            principal_id,
            AuditOutcome.SUCCESS,
            {
                "device": device_fingerprint,
                "session_id": record.id,
                "expires_at": record.expires_at.isoformat(),
            },
        )
        return IssuedSession(session=record, token=token, created=created)

    def check_session(self, principal_id: str, device_fingerprint: str) -> Optional[SessionRecord]:
        """Return the valid session for (principal, device), or None."""
        if not device_fingerprint:
            return None
        generation = 0
        if self.cache is not None:
            cached = self.cache.get(principal_id, device_fingerprint)
            if cached is not None:
                return cached
            generation = self.cache.generation(principal_id)

        now = self.clock()
        record = self.store.get_session(principal_id, device_fingerprint)
        if record is None:
            return None
        if record.is_valid(now):
            if self.cache is not None:
                self.cache.put(record, generation)
            return record
        if record.verified:
            self._expire(record, now)
        return None

    def is_session_valid(self, principal_id: str, device_fingerprint: str) -> bool:
        return self.check_session(principal_id, device_fingerprint) is not None

    def _expire(self, record: SessionRecord, now: datetime) -> bool:
        if not self.store.expire_session(record.principal_id, record.device_fingerprint, now):
            return False
        self.invalidate_cache(record.principal_id, record.device_fingerprint)
        logger.info(f"MFA session for {record.principal_id} on {record.device_fingerprint} expired")
        self.audit.record_audit_event(
            AuditKind.SESSION_EXPIRED,
            record.principal_id,
            AuditOutcome.INFO,
            {"device": record.device_fingerprint, "session_id": record.id, "expired_at": record.expires_at.isoformat()},
        )
        return True

    def list_sessions(self, principal_id: str) -> List[SessionRecord]:
        """All known devices for the principal, elapsed sessions marked unverified."""
        now = self.clock()
        sessions = self.store.list_sessions(principal_id)
        for record in sessions:
            if record.verified and now >= record.expires_at:
                self._expire(record, now)
                record.verified = False
        return sessions

    def device_status(self, principal_id: str) -> DeviceStatus:
        sessions = self.list_sessions(principal_id)
        return DeviceStatus(
            verified_devices=sum(1 for s in sessions if s.verified),
            known_devices=len(sessions),
        )

    def session_from_token(self, token: str) -> Optional[SessionRecord]:
        """Resolve a session token to its still-valid session, or None."""
        try:
            payload = security.decode_session_token(token)
        except jwt.InvalidTokenError as exc:
            logger.info(f"Rejected session token: {exc}")
            return None
        record = self.check_session(payload["sub"], payload.get("dev") or "")
        if record is None or record.id != payload.get("sid"):
            return None
        return record

    def invalidate_session(self, principal_id: str, device_fingerprint: str, actor: Optional[str] = None) -> bool:
        """Single-device logout."""
        removed = self.store.delete_session(principal_id, device_fingerprint)
        self.invalidate_cache(principal_id, device_fingerprint)
        if removed:
            self.audit.record_audit_event(
                AuditKind.SESSION_INVALIDATED,
                principal_id,
                AuditOutcome.INFO,
                {"device": device_fingerprint, "actor": actor or principal_id},
            )
        return removed

    def invalidate_all(self, principal_id: str, reason: str = "logout", actor: Optional[str] = None) -> int:
        """Remove every session of the principal across all devices."""
        removed = self.store.delete_sessions(principal_id)
        self.invalidate_cache(principal_id)
        logger.info(f"Invalidated {removed} MFA session(s) for {principal_id} ({reason})")
        self.audit.record_audit_event(
            AuditKind.SESSIONS_INVALIDATED,
            principal_id,
            AuditOutcome.INFO,
            {"removed": removed, "reason": reason, "actor": actor or principal_id},
        )
        return removed
