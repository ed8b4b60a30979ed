"""
Key-scoped locks.

Exclusive, blocking, timeout-bounded locks keyed by string. Used for the
per-loan serialization of payments, reversals and recalculation, and for the
read-increment-write of a sequence bucket. Locks are reentrant for the
owning thread.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from .exceptions import LockTimeout


logger = logging.getLogger(__name__)


class KeyLockRegistry:
    """Registry of reentrant locks, one per key, created on first use"""
    
    def __init__(self, default_timeout: float = 10.0):
        self.default_timeout = default_timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
    
    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock
    
    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        """
        Hold the lock for ``key`` for the duration of the block.
        
        Raises:
            LockTimeout: if the lock is not acquired within ``timeout`` seconds
        """
        wait = self.default_timeout if timeout is None else timeout
        lock = self._lock_for(key)
        if not lock.acquire(timeout=wait):
            logger.warning("Lock wait timed out for %s after %ss", key, wait)
            raise LockTimeout(key, wait)
        try:
            yield
        finally:
            lock.release()
    
    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def loan_lock_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


def sequence_lock_key(bucket: str) -> str:
    return f"sequence:{bucket}"
