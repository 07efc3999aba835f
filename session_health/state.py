"""Scan checkpoints: where the incremental scanner stopped, per (session, file).

Layout: ``scanners/<session>/<digest of file path>.state``. A checkpoint with
an unknown version tag is never interpreted; ``load`` treats it as absent.
"""

import json
import logging
import shutil
import time
from dataclasses import asdict, dataclass, field, fields

from .fsutil import atomic_write, digest, rjson, safe_id

log = logging.getLogger(__name__)

VERSION = 2


@dataclass
class ScanCheckpoint:
    path: str = ""
    byte_offset: int = 0
    size: int = 0
    mtime_ns: int = 0
    message_count: int = 0
    approximate: bool = False
    extractor_data: dict = field(default_factory=dict)
    last_scan_at: float = 0.0
    version: int = VERSION

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, d):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in names})


def _well_formed(cp):
    """Field types a scan can rely on; anything else is treated as absent."""
    counters = (cp.byte_offset, cp.size, cp.mtime_ns, cp.message_count)
    if not all(isinstance(v, int) and not isinstance(v, bool) for v in counters):
        return False
    if cp.byte_offset < 0 or cp.message_count < 0 or not isinstance(cp.path, str):
        return False
    if not isinstance(cp.extractor_data, dict):
        return False
    for key, value in cp.extractor_data.items():
        if key == "last_message":
            if not isinstance(value, dict):
                return False
        elif not isinstance(value, list):
            return False
    return True


class StateManager:
    def __init__(self, directory, legacy_dir=None):
        self.dir = directory
        self.legacy_dir = legacy_dir

    def session_dir(self, session_id):
        return self.dir / safe_id(session_id)

    def state_path(self, session_id, path):
        return self.session_dir(session_id) / f"{digest(path)}.state"

    def load(self, session_id, path):
        """Checkpoint for (session, file), or None if absent/corrupt/unknown version."""
        sp = self.state_path(session_id, path)
        if not sp.exists():
            return self._migrate(session_id, path)
        data = rjson(sp)
        if not isinstance(data, dict):
            log.info("corrupt checkpoint %s, ignoring", sp)
            return None
        if data.get("version") != VERSION:
            log.info("unknown checkpoint version %r in %s, ignoring", data.get("version"), sp)
            return None
        try:
            cp = ScanCheckpoint.from_dict(data)
        except TypeError as e:
            log.info("malformed checkpoint %s: %s", sp, e)
            return None
        if not _well_formed(cp):
            log.info("malformed checkpoint %s, ignoring", sp)
            return None
        if cp.path and cp.path != str(path):
            # Digest collision or hand-edited file; not ours.
            return None
        return cp

    def save(self, session_id, cp):
        cp.last_scan_at = time.time()
        sp = self.state_path(session_id, cp.path)
        try:
            atomic_write(sp, json.dumps(cp.to_dict(), separators=(",", ":")),
                         fallback_direct=True)
        except OSError as e:
            log.warning("failed to save checkpoint for %s: %s", session_id, e)
            return False
        return True

    def delete(self, session_id):
        d = self.session_dir(session_id)
        if d.exists():
            shutil.rmtree(d, ignore_errors=True)

    def list_sessions(self):
        try:
            return sorted(p.name for p in self.dir.iterdir() if p.is_dir())
        except OSError:
            return []

    # ═══════════════════════ LEGACY MIGRATION ═══════════════════════

    def _legacy_paths(self, session_id):
        sid = safe_id(session_id)
        return (self.legacy_dir / f"{sid}-transcript.state",
                self.legacy_dir / f"{sid}-gitleaks.state")

    def _migrate(self, session_id, path):
        """Fold old per-feature state files into one checkpoint so history survives."""
        if self.legacy_dir is None:
            return None
        transcript_p, gitleaks_p = self._legacy_paths(session_id)
        old_t = rjson(transcript_p) if transcript_p.exists() else None
        old_g = rjson(gitleaks_p) if gitleaks_p.exists() else None
        if not isinstance(old_t, dict) and not isinstance(old_g, dict):
            return None

        try:
            cp = self._from_legacy(path, old_t, old_g)
        except (TypeError, ValueError, AttributeError, OverflowError) as e:
            log.info("unusable legacy scanner state for %s: %s", session_id, e)
            return None
        if not _well_formed(cp):
            log.info("unusable legacy scanner state for %s", session_id)
            return None
        log.info("migrated legacy scanner state for %s", session_id)
        if self.save(session_id, cp):
            for p in (transcript_p, gitleaks_p):
                if p.exists():
                    try:
                        p.rename(p.with_name(p.name + ".migrated"))
                    except OSError as e:
                        log.debug("could not retire %s: %s", p, e)
        return cp

    @staticmethod
    def _from_legacy(path, old_t, old_g):
        cp = ScanCheckpoint(path=str(path))
        if isinstance(old_t, dict):
            cp.byte_offset = int(old_t.get("lastReadOffset") or 0)
            cp.mtime_ns = int(float(old_t.get("lastReadMtime") or 0) * 1_000_000)
            cp.message_count = int(old_t.get("messageCount") or 0)
            last = old_t.get("lastUserMessage") or {}
            cp.extractor_data["last_message"] = {
                "timestamp": float(last.get("timestamp") or 0) / 1000.0,
                "preview": last.get("preview") or "",
                "sender": "human" if last else "unknown",
                "turn_number": cp.message_count,
            }
        if isinstance(old_g, dict):
            if not isinstance(old_t, dict):
                cp.byte_offset = int(old_g.get("lastScannedOffset") or 0)
                cp.mtime_ns = int(float(old_g.get("lastScannedMtime") or 0) * 1_000_000)
            cp.extractor_data["secrets"] = [
                f for f in (old_g.get("knownFindings") or [])
                if isinstance(f, dict) and f.get("fingerprint")
            ]
        # Size unknown: force the next scan to look at the file.
        cp.size = -1
        return cp
