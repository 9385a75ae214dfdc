"""
Per-key mutual exclusion.

The state machine, the audit ledger and the escalation scheduler all need
"serialize work for the same key, never block other keys".  KeyedLocks hands
out one RLock per key and drops it again once nobody holds or waits on it.

Usage:
    locks = KeyedLocks()
    with locks.hold(document_id):
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator


class KeyedLocks:
    """Reference-counted registry of per-key re-entrant locks."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}
        self._refs: dict[Hashable, int] = {}

    def _acquire_ref(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _release_ref(self, key: Hashable) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._acquire_ref(key)
        try:
            with lock:
                yield
        finally:
            self._release_ref(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
