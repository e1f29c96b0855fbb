"""
Per-identity locking.

Serializes the read-modify-write of one identity's quota state while
leaving other identities free to proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class IdentityLocks:
    """Registry of one lock per identity.

    Locks are reference-counted and dropped once no thread holds or waits
    on them, so the registry only grows with concurrent identities.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # identity -> [lock, holders-and-waiters]
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, identity: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(identity)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[identity] = entry
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
                    del self._locks[identity]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
