"""
Per-key locks for serializing work on one task inside a process.
Cross-process serialization comes from conditional writes in the store.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _Entry:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """
    Registry of re-entrant locks, one per key.

    An entry lives only while some thread holds or waits for its key, so a
    warm Lambda container does not accumulate a lock per task it ever touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]
