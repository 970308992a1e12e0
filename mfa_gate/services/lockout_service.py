"""
Lockout Tracker
===============

Per-principal state machine: Clear -> Warning(n < threshold) -> Locked(until)
-> Clear (timeout or success). Counting and resetting are single atomic store
operations; an elapsed lock is cleared lazily on the next read.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from mfa_gate.core.config import Settings
from mfa_gate.core.time import Clock, utcnow
from mfa_gate.schemas.records import LockoutState

from .audit_service import AuditKind, AuditOutcome, AuditSink
from .credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class LockStatus:
    locked: bool
    locked_until: Optional[datetime] = None
    consecutive_failures: int = 0
    remaining_attempts: int = 0


class LockoutTracker:
    def __init__(self, store: CredentialStore, audit: AuditSink, settings: Settings, clock: Clock = utcnow):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.threshold = settings.lockout_failure_threshold
        self.lock_for = timedelta(minutes=settings.lockout_duration_minutes)

    def _remaining(self, failures: int) -> int:
        return max(0, self.threshold - failures)

    def is_locked(self, principal_id: str) -> LockStatus:
        """
        Check the principal's lock.

        Returns:
            LockStatus; `locked` is true while now < locked_until
        """
        now = self.clock()
        state = self.store.get_lockout(principal_id)
        if state.is_locked(now):
            return LockStatus(True, state.locked_until, state.consecutive_failures, 0)
        if state.locked_until is not None:
            # lock elapsed: clear it so the next failure starts a fresh count
            previous = self.store.clear_elapsed_lock(principal_id, now)
            if previous is not None:
                logger.info(f"Lockout for {principal_id} elapsed at {previous.locked_until.isoformat()}")
                self.audit.record_audit_event(
                    AuditKind.LOCKOUT_CLEARED,
                    principal_id,
                    AuditOutcome.INFO,
                    {"cause": "timeout", "locked_until": previous.locked_until.isoformat()},
                )
            return LockStatus(False, None, 0, self.threshold)
        return LockStatus(False, None, state.consecutive_failures, self._remaining(state.consecutive_failures))

    def record_failure(self, principal_id: str) -> LockoutState:
        now = self.clock()
        state, engaged = self.store.increment_failures(principal_id, now, self.threshold, self.lock_for)
        if engaged:
            logger.warning(
                f"Principal {principal_id} locked after {state.consecutive_failures} failed attempts "
                f"until {state.locked_until.isoformat()}"
            )
            self.audit.record_audit_event(
                AuditKind.LOCKOUT_ENGAGED,
                principal_id,
                AuditOutcome.FAILURE,
                {
                    "consecutive_failures": state.consecutive_failures,
                    "locked_until": state.locked_until.isoformat(),
                },
            )
        return state

    def record_success(self, principal_id: str) -> None:
        previous = self.store.reset_lockout(principal_id)
        if previous.consecutive_failures:
            logger.debug(f"Reset {previous.consecutive_failures} failures for {principal_id}")

    def unlock(self, principal_id: str, actor: Optional[str] = None) -> bool:
        """Administrative clear of a lockout. Returns True if anything was reset."""
        previous = self.store.reset_lockout(principal_id)
        if not previous.consecutive_failures and previous.locked_until is None:
            return False
        logger.info(f"Principal {principal_id} manually unlocked by {actor}")
        self.audit.record_audit_event(
            AuditKind.LOCKOUT_CLEARED,
            principal_id,
            AuditOutcome.INFO,
            {"cause": "manual", "actor": actor, "consecutive_failures": previous.consecutive_failures},
        )
        return True

    def remaining_attempts(self, state: LockoutState) -> int:
        return self._remaining(state.consecutive_failures)
