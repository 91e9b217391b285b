"""Per-key locking for transaction and participant records."""

from __future__ import annotations

import threading
from collections.abc import Generator
from contextlib import contextmanager


class KeyedLock:
    """A reentrant lock per key, created on demand and dropped when idle.

    Reentrant so an event handler running inside a critical section may
    act on the same record again.

    Example:
        locks = KeyedLock()
        with locks.hold(transaction_id):
            ...
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
