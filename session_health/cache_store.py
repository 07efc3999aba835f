"""File-backed cache of source results shared between invocations.

Tier-3 (global) entries live in ``cache/<category>.json`` and are shared by
every pane on the machine. Tier-2 entries live under the owning session,
``sessions/<session>/cache/<category>.json``, and are never read by another
session. Every write is an atomic replace; readers see the old entry or the
new one, never a torn file.
"""

import json
import logging
import os
import time
from dataclasses import dataclass

from .freshness import lookup
from .fsutil import atomic_write, rjson, safe_id

log = logging.getLogger(__name__)

SCHEMA = 1


@dataclass
class CacheEntry:
    value: object
    produced_at: float
    category: str
    size_estimate: int
    fresh: bool
    status: str
    age: float = 0.0
    produced_by: int = 0
    context_key: str = None


class TieredCacheStore:
    def __init__(self, settings, categories, clock=time.time, mono=time.monotonic):
        self.cache_dir = settings.cache_dir
        self.sessions_dir = settings.sessions_dir
        self.mirror_ttl = settings.mirror_ttl
        self.categories_cfg = categories
        self.clock = clock
        self.mono = mono
        self._mirror = {}  # (session_id, category) -> (doc, expires_at)

    def path(self, category, session_id=None):
        name = f"{safe_id(category)}.json"
        if session_id is None:
            return self.cache_dir / name
        return self.sessions_dir / safe_id(session_id) / "cache" / name

    def read(self, category, session_id=None, context_key=None, use_mirror=True):
        """Entry for the category, stale ones included. None if absent or unusable."""
        doc = self._load(category, session_id, use_mirror)
        if doc is None:
            return None
        if context_key is not None and doc.get("context_key") != context_key:
            return None
        return self._entry(doc)

    def write(self, category, value, session_id=None, context_key=None):
        """Persist ``value`` (JSON-serializable). Returns the entry, or None on failure."""
        doc = {
            "version": SCHEMA,
            "category": category,
            "produced_at": self.clock(),
            "produced_by": os.getpid(),
            "context_key": context_key,
            "value": value,
        }
        try:
            doc["size"] = len(json.dumps(value, separators=(",", ":")))
            text = json.dumps(doc, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            log.warning("value for %s is not serializable: %s", category, e)
            return None
        try:
            atomic_write(self.path(category, session_id), text)
        except OSError as e:
            log.warning("cache write failed for %s: %s", category, e)
            return None
        self._mirror[(session_id, category)] = (doc, self.mono() + self.mirror_ttl)
        return self._entry(doc)

    def invalidate(self, category, session_id=None):
        self._mirror.pop((session_id, category), None)
        try:
            self.path(category, session_id).unlink(missing_ok=True)
        except OSError as e:
            log.debug("could not remove cache entry %s: %s", category, e)

    def categories(self, session_id=None):
        d = self.path("x", session_id).parent
        try:
            return sorted(p.stem for p in d.glob("*.json"))
        except OSError:
            return []

    def _load(self, category, session_id, use_mirror=True):
        key = (session_id, category)
        m = self._mirror.get(key)
        if use_mirror and m is not None and self.mono() <= m[1]:
            return m[0]
        p = self.path(category, session_id)
        doc = rjson(p)
        if doc is None:
            self._mirror.pop(key, None)
            return None
        if (not isinstance(doc, dict) or doc.get("version") != SCHEMA
                or doc.get("category") != category or "value" not in doc
                or not isinstance(doc.get("produced_at"), (int, float))):
            log.info("ignoring unusable cache file %s", p)
            return None
        doc.setdefault("size", 0)
        self._mirror[key] = (doc, self.mono() + self.mirror_ttl)
        return doc

    def _entry(self, doc):
        cat = lookup(self.categories_cfg, doc["category"])
        now = self.clock()
        produced = float(doc["produced_at"])
        return CacheEntry(
            value=doc["value"],
            produced_at=produced,
            category=doc["category"],
            size_estimate=int(doc.get("size") or 0),
            fresh=cat.is_fresh(produced, now),
            status=cat.status(produced, now),
            age=max(0.0, now - produced),
            produced_by=int(doc.get("produced_by") or 0),
            context_key=doc.get("context_key"),
        )
