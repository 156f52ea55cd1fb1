from __future__ import annotations

import threading
from typing import List


class KeyedLocks:
    """Fixed pool of locks striped by key.

    Two callers contend only when their keys land on the same stripe, so
    unrelated devices and origins proceed in parallel and memory stays
    bounded however many keys are seen.
    """

    def __init__(self, stripes: int = 256):
        if stripes < 1:
            raise ValueError("stripes must be positive")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]
