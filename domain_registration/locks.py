"""
Per-record mutual exclusion leases.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from errors import ConflictError

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    Hands out one lock per key, created on demand and dropped once no
    holder or waiter references it. Acquisition is bounded by ``timeout``.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @contextmanager
    def lease(self, key: str, timeout: float = None) -> Iterator[None]:
        """
        Hold the lock for ``key`` for the duration of the block.

        Raises:
            ConflictError: If the lease is not granted within the timeout
        """
        wait = self.timeout if timeout is None else timeout
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1

        acquired = False
        try:
            acquired = lock.acquire(timeout=wait)
            if not acquired:
                logger.warning(f"Lease for {key} not granted within {wait}s")
                raise ConflictError(
                    f"Another operation is in progress for {key}",
                    {"lease": key, "timeout": wait},
                )
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def held(self) -> int:
        with self._guard:
            return len(self._locks)
