"""Per-key locking for per-user read-modify-write state."""

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator


class KeyedLock:
    """
    A lazily created re-entrant lock per key.

    Mutations for the same key are serialised; different keys never
    contend beyond the short registry lookup.
    """

    def __init__(self):
        self._guard = Lock()
        self._locks: Dict[str, RLock] = {}

    def for_key(self, key: str) -> RLock:
        """Get (or create) the lock for a key."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for `key` for the duration of the block."""
        lock = self.for_key(key)
        with lock:
            yield
