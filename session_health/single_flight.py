"""Cross-process single-flight: at most one process refreshes a category.

A lock is the file ``locks/<category>.lock`` containing ``{pid, acquired_at}``.
The content is written to a private temp file first and then hard-linked
into place, so the lock never becomes visible empty. Existence of the file
plus a live holder means held. A dead holder (zero-signal probe) or a lock
older than ``max_lock_age`` is reclaimed, and acquisition is retried once.
Reclaiming moves the lock aside before deleting it, so a lock taken by
another process between inspection and removal survives.

Known race: PID reuse can make a dead holder look alive until
``max_lock_age`` passes. A third process can take the slot while a
lock that changed hands is being restored; both then refresh once.)
"""

import errno
import json
import logging
import os
import time
from contextlib import contextmanager

from .fsutil import rjson, safe_id

log = logging.getLogger(__name__)

_NO_LINK = (errno.EPERM, errno.ENOTSUP, errno.EXDEV, errno.EMLINK)


def is_alive(pid):
    """Zero-signal probe. EPERM means the process exists but isn't ours."""
    try:
        pid = int(pid)
    except (TypeError, ValueError):
        return False
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class SingleFlightCoordinator:
    def __init__(self, directory, max_lock_age=120.0, clock=time.time, pid=None):
        self.dir = directory
        self.max_lock_age = max_lock_age
        self.clock = clock
        self.pid = os.getpid() if pid is None else pid
        self.held = set()

    def _path(self, category):
        return self.dir / f"{safe_id(category)}.lock"

    def try_acquire(self, category):
        """True if this process now holds the category's lock."""
        try:
            self.dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning("lock dir unavailable: %s", e)
            return False
        for attempt in (1, 2):
            if self._create(category):
                self.held.add(category)
                log.debug("acquired %s", category)
                return True
            if attempt == 1 and not self.reclaim(category):
                return False
        return False

    def release(self, category):
        """Remove the lock, but only if this process is its holder."""
        self.held.discard(category)
        p = self._path(category)
        h = self.holder(category)
        if h is None or h.get("pid") != self.pid:
            log.debug("not releasing %s held by %s", category, h)
            return
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            log.warning("could not release %s: %s", category, e)

    def release_all(self):
        for c in list(self.held):
            self.release(c)

    @contextmanager
    def hold(self, category):
        """``with coord.hold("billing") as ok:`` -- releases on exit when acquired."""
        ok = self.try_acquire(category)
        try:
            yield ok
        finally:
            if ok:
                self.release(category)

    def holder(self, category):
        data = rjson(self._path(category))
        return data if isinstance(data, dict) else None

    def is_reclaimable(self, category):
        """Lock whose holder is dead, unreadable, or older than max_lock_age."""
        try:
            st = self._path(category).stat()
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return self._stale(st, self.holder(category))

    def reclaim(self, category):
        """Remove a stale lock. True when the slot is free to take.

        The inspected lock is renamed to a private tombstone and compared
        with what was inspected. A lock that changed hands in between is
        linked back into place instead of being removed.
        """
        p = self._path(category)
        try:
            st = p.stat()
        except FileNotFoundError:
            return True
        except OSError as e:
            log.warning("could not inspect lock %s: %s", category, e)
            return False
        seen = self.holder(category)
        if not self._stale(st, seen):
            return False
        grave = p.with_name(f"{p.name}.{self.pid}.{os.urandom(4).hex()}.reclaim.tmp")
        try:
            os.rename(p, grave)
        except FileNotFoundError:
            return True
        except OSError as e:
            log.warning("could not reclaim %s: %s", category, e)
            return False
        try:
            taken = grave.stat()
            if (taken.st_dev, taken.st_ino) != (st.st_dev, st.st_ino) or rjson(grave) != seen:
                log.info("lock %s changed hands during reclaim, restoring", category)
                self._restore(grave, p, category)
                return False
            log.info("reclaimed lock %s from %s", category, seen)
            return True
        except OSError as e:
            log.warning("reclaim of %s failed: %s", category, e)
            return False
        finally:
            grave.unlink(missing_ok=True)

    # ═══════════════════════ INTERNALS ═══════════════════════

    def _stale(self, st, h):
        if h is None:
            # Unreadable content: fall back to file age.
            return self.clock() - st.st_mtime > self.max_lock_age
        if not is_alive(h.get("pid")):
            return True
        try:
            age = self.clock() - float(h.get("acquired_at") or 0)
        except (TypeError, ValueError):
            return True
        return age > self.max_lock_age

    def _create(self, category):
        p = self._path(category)
        body = json.dumps({"pid": self.pid, "acquired_at": self.clock()})
        tmp = p.with_name(f"{p.name}.{self.pid}.tmp")
        try:
            tmp.write_text(body)
            try:
                os.link(tmp, p)
                return True
            except FileExistsError:
                return False
            except OSError as e:
                if e.errno not in _NO_LINK:
                    raise
            return self._create_exclusive(p, body.encode())
        except OSError as e:
            log.warning("lock create failed for %s: %s", category, e)
            return False
        finally:
            tmp.unlink(missing_ok=True)

    @staticmethod
    def _create_exclusive(p, body):
        # No hard links here: exclusive create, then fill.
        try:
            fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "wb") as f:
            f.write(body)
        return True

    def _restore(self, grave, p, category):
        try:
            os.link(grave, p)
            return
        except FileExistsError:
            log.warning("lock %s was taken again before it could be restored", category)
            return
        except OSError as e:
            if e.errno not in _NO_LINK:
                log.warning("could not restore lock %s: %s", category, e)
                return
        try:
            if not self._create_exclusive(p, grave.read_bytes()):
                log.warning("lock %s was taken again before it could be restored", category)
        except OSError as e:
            log.warning("could not restore lock %s: %s", category, e)
