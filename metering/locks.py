"""Per-meter mutual exclusion."""
from __future__ import annotations

import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class MeterLocks:
    """Hands out one re-entrant lock per meter id.

    Holding a meter's lock serializes every read-modify-write against that
    meter. Locks are never shared between meters. An entry lives only while
    some caller still holds a reference to its lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[int, threading.RLock]" = weakref.WeakValueDictionary()

    def lock_for(self, meter_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(meter_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[meter_id] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, meter_id: int) -> Iterator[None]:
        lock = self.lock_for(meter_id)
        with lock:
            yield
