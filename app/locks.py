"""Per-key mutual exclusion for read-modify-write sequences on entity files."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
    """Map of entity key -> lock, with reference counting so idle keys are dropped.

    ``hold("a", "b")`` acquires every key in sorted order, so two callers
    locking the same pair of names cannot deadlock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _acquire_ref(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _release_ref(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        ordered = sorted(set(keys))
        held = []
        try:
            for key in ordered:
                lock = self._acquire_ref(key)
                try:
                    lock.acquire()
                except BaseException:
                    self._release_ref(key)
                    raise
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._release_ref(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
