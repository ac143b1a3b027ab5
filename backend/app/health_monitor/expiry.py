"""
Expiring Set — time-boxed membership markers with a hard size bound.

Used to announce an ongoing condition once per TTL instead of on every
analysis cycle. Entries expire after `ttl_seconds`; when the set is full the
oldest entry is evicted first, so memory stays bounded however many keys
are marked.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Hashable


class ExpiringSet:
    def __init__(self, ttl_seconds: float, max_size: int = 1024) -> None:
        self._ttl = ttl_seconds
        self._max_size = max(1, max_size)
        self._lock = threading.Lock()
        # key → monotonic time it was marked; insertion order == age order
        self._entries: OrderedDict[Hashable, float] = OrderedDict()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def add(self, key: Hashable, now: float) -> bool:
        """Mark key. Returns True if it was not already live (newly marked)."""
        with self._lock:
            self._prune(now)
            if key in self._entries:
                return False
            self._entries[key] = now
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
            return True

    def contains(self, key: Hashable, now: float) -> bool:
        with self._lock:
            self._prune(now)
            return key in self._entries

    def discard(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self, now: float) -> int:
        with self._lock:
            self._prune(now)
            return len(self._entries)

    def set_ttl(self, ttl_seconds: float) -> None:
        with self._lock:
            self._ttl = ttl_seconds

    def _prune(self, now: float) -> None:
        """Drop expired entries from the old end. Must hold lock."""
        cutoff = now - self._ttl
        while self._entries:
            key, marked_at = next(iter(self._entries.items()))
            if marked_at > cutoff:
                break
            self._entries.popitem(last=False)
