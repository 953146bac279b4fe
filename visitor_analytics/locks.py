"""Per-key mutual exclusion for shared per-address state."""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

DEFAULT_STRIPES = 64


class KeyedLock:
    """Striped locks: every key maps to one of a fixed set of locks.

    Two updates for the same key always contend on the same lock, so a
    read-then-increment-then-write sequence is serialized per key. Locks are
    never created or discarded per key, so evicting a key's state cannot race
    with a waiter holding a stale lock object.
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = tuple(threading.Lock() for _ in range(stripes))

    def lock_for(self, key: Hashable) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self.lock_for(key)
        with lock:
            yield
