"""
Per-loan locking

Payments, reclassifications, penalty accrual and resolutions each run a
read-modify-write over one loan's installments. They hold the loan's lock for
the whole sequence. Locks are re-entrant so a flow may call another flow on
the same loan.

A loan's lock lives in the registry only while some thread holds or waits on
it, so the registry stays as small as the set of loans in flight.
"""

import threading
from contextlib import contextmanager
from typing import Dict

from .exceptions import LoanLocked
from .logging_config import get_logger


logger = get_logger(__name__)


class LoanLockManager:
    """Registry of exclusive, re-entrant locks keyed by loan id"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_lock = threading.Lock()

    def tracked_count(self) -> int:
        """Number of loans whose lock is held or awaited"""
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, loan_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            self._users[loan_id] = self._users.get(loan_id, 0) + 1
            return lock

    def _checkin(self, loan_id: str):
        with self._registry_lock:
            remaining = self._users[loan_id] - 1
            if remaining:
                self._users[loan_id] = remaining
            else:
                del self._users[loan_id]
                del self._locks[loan_id]

    @contextmanager
    def hold(self, loan_id: str, timeout: float = None):
        """
        Hold the loan's lock for the duration of the block

        Raises:
            LoanLocked: If the lock is not acquired within the timeout
        """
        wait = self.timeout if timeout is None else timeout
        lock = self._checkout(loan_id)
        try:
            if not lock.acquire(timeout=wait):
                logger.warning("Lock timeout on loan %s after %ss", loan_id, wait,
                               extra={"loan_id": loan_id})
                raise LoanLocked(loan_id, wait)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(loan_id)
