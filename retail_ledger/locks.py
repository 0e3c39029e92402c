"""
Per-Account Locking Module

Hands out one re-entrant lock per key (normally an account id). A critical
section that touches several accounts acquires their locks in sorted key
order, so two transfers over the same pair can never deadlock whichever side
is "from" and which is "to". Transfers over disjoint accounts never contend.

Locks are reference counted: a key stays registered only while some thread
holds or waits for it, so one-off keys such as idempotency keys do not
accumulate.
"""

from contextlib import contextmanager
from typing import Dict, Iterable, List
import threading
import time

from .errors import LedgerTimeoutError
from .logging_config import get_logger


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class AccountLockManager:
    """Registry of per-key locks with ordered, time-bounded acquisition"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, _LockEntry] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger("retail_ledger.locks")

    def active_count(self) -> int:
        """Number of keys currently held or waited on"""
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.RLock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _LockEntry()
                self._locks[key] = entry
            entry.users += 1
            return entry.lock

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def acquire(self, keys: Iterable[str], timeout: float = None):
        """
        Acquire the locks for all keys, in sorted order

        Args:
            keys: Lock keys; None entries and duplicates are ignored
            timeout: Total seconds to wait for all locks (defaults to manager timeout)

        Raises:
            LedgerTimeoutError: If the locks could not all be taken in time
        """
        ordered = sorted({key for key in keys if key})
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        checked_out: List[str] = []
        held: List[threading.RLock] = []

        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self.logger.warning(f"Timed out after {budget}s waiting for lock {key}")
                    raise LedgerTimeoutError(
                        f"Timed out waiting for lock on {key}",
                        {"key": key, "timeout": budget}
                    )
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for key in checked_out:
                self._checkin(key)
