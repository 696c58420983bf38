"""Per-entity lock management.

One lock per key, created on demand, so unrelated milestones, tasks and
workers proceed concurrently while writes to the same entity serialize.
"""

import threading
from contextlib import ExitStack, contextmanager


class KeyedLock:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: str):
        """Acquire the lock for ``key``, yield, release on exit."""
        with self._lock_for(key):
            yield

    @contextmanager
    def hold_all(self, *keys: str):
        """Acquire several keys in the given order (callers keep a fixed order)."""
        with ExitStack() as stack:
            seen = set()
            for key in keys:
                if key in seen:
                    continue
                seen.add(key)
                stack.enter_context(self.hold(key))
            yield
