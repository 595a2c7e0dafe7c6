"""
Per-key locking

Serializes read-modify-write sequences on the same record while letting
different records proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List


class KeyedLock:
    """Registry of locks keyed by record id, discarded when unused"""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str):
        """Hold the lock for key for the duration of the block"""
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
