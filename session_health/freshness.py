"""Freshness categories: one TTL / staleness / retry policy per class of data.

A value is fresh while ``produced_at + ttl >= now``. Past that it is stale but
still usable; past ``critical_after`` it is critical (still returned, the
formatting layer decides how loudly to say so). ``cooldown`` is how long a
category rests after a failed fetch before any process retries it.
"""

import logging
import os
import time
from dataclasses import dataclass, replace

from .fsutil import safe_id

log = logging.getLogger(__name__)

FRESH, STALE, CRITICAL, UNKNOWN = "fresh", "stale", "critical", "unknown"


@dataclass(frozen=True)
class Category:
    name: str
    ttl: float
    critical_after: float = None
    cooldown: float = 0.0

    def is_fresh(self, produced_at, now=None):
        if not produced_at or produced_at <= 0:
            return False
        now = time.time() if now is None else now
        return produced_at + self.ttl >= now

    def status(self, produced_at, now=None):
        if not produced_at or produced_at <= 0:
            return UNKNOWN
        now = time.time() if now is None else now
        age = now - produced_at
        if age <= self.ttl:
            return FRESH
        if self.critical_after is not None and age >= self.critical_after:
            return CRITICAL
        return STALE


DEFAULT_CATEGORIES = {
    c.name: c for c in (
        Category("billing", ttl=120, critical_after=600, cooldown=120),
        Category("quota", ttl=300, critical_after=86_400, cooldown=300),
        Category("git_status", ttl=30, critical_after=300),
        Category("transcript", ttl=300, critical_after=600),
        Category("secrets", ttl=300),
        Category("context", ttl=5),
        Category("model", ttl=5),
        Category("session_cost", ttl=5),
        Category("quota_override", ttl=5),
    )
}
FALLBACK = Category("default", ttl=60)


def build_categories(overrides=None):
    """Defaults with ``[categories.<name>]`` config overrides applied."""
    cats = dict(DEFAULT_CATEGORIES)
    for name, o in (overrides or {}).items():
        base = cats.get(name, replace(FALLBACK, name=name))
        try:
            cats[name] = replace(
                base,
                ttl=float(o.get("ttl", base.ttl)),
                cooldown=float(o.get("cooldown", base.cooldown)),
                critical_after=(float(o["critical_after"])
                                if o.get("critical_after") is not None
                                else base.critical_after),
            )
        except (TypeError, ValueError):
            log.warning("ignoring bad override for category %s: %r", name, o)
    return cats


def lookup(categories, name):
    return categories.get(name) or replace(FALLBACK, name=name)


# ═══════════════════════ COOLDOWNS ═══════════════════════

class Cooldowns:
    """File-based failure cooldowns, visible to every process on the machine."""

    def __init__(self, directory, categories, clock=time.time):
        self.dir = directory
        self.categories = categories
        self.clock = clock

    def _path(self, name):
        return self.dir / f"{safe_id(name)}.cooldown"

    def active(self, name):
        cat = lookup(self.categories, name)
        if cat.cooldown <= 0:
            return False
        p = self._path(name)
        try:
            age = self.clock() - p.stat().st_mtime
        except OSError:
            return False
        if age < cat.cooldown:
            return True
        p.unlink(missing_ok=True)
        return False

    def remaining(self, name):
        cat = lookup(self.categories, name)
        try:
            age = self.clock() - self._path(name).stat().st_mtime
        except OSError:
            return 0.0
        return max(0.0, cat.cooldown - age)

    def record(self, name, success):
        """Clear on success; start a cooldown on failure (if the category has one)."""
        p = self._path(name)
        try:
            if success:
                p.unlink(missing_ok=True)
            elif lookup(self.categories, name).cooldown > 0:
                self.dir.mkdir(parents=True, exist_ok=True)
                now = self.clock()
                p.write_text(str(now))
                os.utime(p, (now, now))
        except OSError as e:
            log.debug("cooldown bookkeeping failed for %s: %s", name, e)
