"""Short-TTL in-process memo for expensive producers (the transcript scanner).

Bounded by entry count and by an estimated byte footprint. Eviction drops
expired entries first, then the earliest-expiring ones until both bounds hold.
"""

import json
import logging
import time
from dataclasses import asdict, is_dataclass

log = logging.getLogger(__name__)

DEFAULT_TTL = 10.0
MAX_ENTRIES = 100
MAX_BYTES = 10_000_000


def estimate_size(value):
    """Rough byte footprint via JSON length."""
    try:
        if is_dataclass(value) and not isinstance(value, type):
            value = asdict(value)
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return 1000


class ResultCache:
    def __init__(self, ttl=DEFAULT_TTL, max_entries=MAX_ENTRIES, max_bytes=MAX_BYTES,
                 clock=time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.clock = clock
        self._entries = {}  # key -> (value, expires_at, size)
        self._bytes = 0
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return self.get(key) is not None

    def get(self, key):
        e = self._entries.get(key)
        if e is None:
            self.misses += 1
            return None
        if self.clock() > e[1]:
            self._drop(key)
            self.misses += 1
            return None
        self.hits += 1
        return e[0]

    def set(self, key, value, ttl=None):
        size = estimate_size(value)
        if size > self.max_bytes:
            log.debug("not caching %r: %d bytes exceeds bound", key, size)
            self.invalidate(key)
            return
        self.invalidate(key)
        self._entries[key] = (value, self.clock() + (self.ttl if ttl is None else ttl), size)
        self._bytes += size
        self._evict()

    def invalidate(self, key):
        if key in self._entries:
            self._drop(key)

    def clear(self):
        self._entries.clear()
        self._bytes = 0

    def stats(self):
        return {"entries": len(self._entries), "bytes": self._bytes,
                "hits": self.hits, "misses": self.misses}

    def _drop(self, key):
        _, _, size = self._entries.pop(key)
        self._bytes -= size

    def _evict(self):
        now = self.clock()
        for k in [k for k, e in self._entries.items() if now > e[1]]:
            self._drop(k)
        if len(self._entries) <= self.max_entries and self._bytes <= self.max_bytes:
            return
        for k in sorted(self._entries, key=lambda k: self._entries[k][1]):
            if len(self._entries) <= self.max_entries and self._bytes <= self.max_bytes:
                break
            self._drop(k)
