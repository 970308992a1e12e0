"""Per-principal mutual exclusion for read-modify-write sequences."""
import threading
from collections.abc import Iterator
from contextlib import contextmanager


class PrincipalLocks:
    """
    Registry of one re-entrant lock per principal.

    Locks are created on first use and kept for the life of the process; the
    registry lock is only held while looking a lock up.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, principal_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(principal_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[principal_id] = lock
            return lock

    @contextmanager
    def hold(self, principal_id: str) -> Iterator[None]:
        lock = self._lock_for(principal_id)
        with lock:
            yield
