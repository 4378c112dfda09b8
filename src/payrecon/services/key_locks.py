from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLockRegistry:
    """Per-key mutexes plus non-blocking in-flight claims.

    Locks are reference counted and dropped once no caller holds or waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._claims: set[tuple[str, str]] = set()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def try_claim(self, key: str, tag: str) -> bool:
        with self._guard:
            if (key, tag) in self._claims:
                return False
            self._claims.add((key, tag))
            return True

    def release_claim(self, key: str, tag: str) -> None:
        with self._guard:
            self._claims.discard((key, tag))

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
