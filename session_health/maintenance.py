"""Housekeeping, run after output at most once per interval.

Sessions are never cleaned up on exit (the host just stops invoking us), so
their directories are evicted here by age and by count. Also removes
orphaned temp files, expired cooldowns and locks whose holder is gone.
"""

import logging
import shutil
import time

from .freshness import build_categories, lookup
from .fsutil import safe_id
from .single_flight import SingleFlightCoordinator

log = logging.getLogger(__name__)

STAMP = ".last-maintenance"
TMP_MAX_AGE = 3600


def maybe_run(settings, current_session=None, now=None):
    """Run housekeeping unless it ran within ``maintenance_interval``."""
    now = time.time() if now is None else now
    stamp = settings.base_dir / STAMP
    try:
        if now - stamp.stat().st_mtime < settings.maintenance_interval:
            return None
    except FileNotFoundError:
        pass
    except OSError as e:
        log.debug("maintenance stamp unreadable: %s", e)
        return None
    try:
        # Claim the slot first so concurrent panes skip it.
        settings.base_dir.mkdir(parents=True, exist_ok=True)
        stamp.touch()
    except OSError as e:
        log.warning("cannot write maintenance stamp: %s", e)
        return None
    return run(settings, current_session, now)


def run(settings, current_session=None, now=None):
    now = time.time() if now is None else now
    stats = {
        "sessions": evict_sessions(settings, current_session, now),
        "tmp": clean_tmp(settings, now),
        "cooldowns": clean_cooldowns(settings, now),
        "locks": clean_locks(settings, now),
    }
    log.info("maintenance: %s", stats)
    return stats


def _mtime(p):
    try:
        return p.stat().st_mtime
    except OSError:
        return 0.0


def _subdirs(d):
    try:
        return [p for p in d.iterdir() if p.is_dir()]
    except OSError:
        return []


def last_seen(settings):
    """session id -> most recent activity, from health files and checkpoints."""
    seen = {}
    for d in _subdirs(settings.sessions_dir) + _subdirs(settings.scanners_dir):
        t = _mtime(d)
        for p in d.rglob("*"):
            t = max(t, _mtime(p))
        seen[d.name] = max(seen.get(d.name, 0.0), t)
    return seen


def evict_sessions(settings, current_session, now):
    current = safe_id(current_session) if current_session else None
    seen = last_seen(settings)
    victims = {sid for sid, t in seen.items()
               if sid != current and now - t > settings.session_max_age}
    survivors = sorted((sid for sid in seen if sid not in victims),
                       key=lambda sid: seen[sid], reverse=True)
    excess = len(survivors) - settings.max_sessions
    if excess > 0:
        for sid in reversed(survivors):
            if excess <= 0:
                break
            if sid != current:
                victims.add(sid)
                excess -= 1
    for sid in victims:
        for d in (settings.sessions_dir / sid, settings.scanners_dir / sid):
            shutil.rmtree(d, ignore_errors=True)
    if victims:
        log.info("evicted %d sessions", len(victims))
    return len(victims)


def clean_tmp(settings, now):
    n = 0
    for d in (settings.cache_dir, settings.sessions_dir, settings.scanners_dir, settings.locks_dir):
        if not d.exists():
            continue
        for p in d.rglob("*.tmp"):
            if now - _mtime(p) > TMP_MAX_AGE:
                p.unlink(missing_ok=True)
                n += 1
    return n


def clean_cooldowns(settings, now):
    cats = build_categories(settings.categories)
    n = 0
    if not settings.cooldowns_dir.exists():
        return 0
    for p in settings.cooldowns_dir.glob("*.cooldown"):
        if now - _mtime(p) >= lookup(cats, p.stem).cooldown:
            p.unlink(missing_ok=True)
            n += 1
    return n


def clean_locks(settings, now):
    coord = SingleFlightCoordinator(settings.locks_dir, settings.max_lock_age, clock=lambda: now)
    n = 0
    if not settings.locks_dir.exists():
        return 0
    for p in settings.locks_dir.glob("*.lock"):
        if coord.is_reclaimable(p.stem) and coord.reclaim(p.stem):
            n += 1
    return n
