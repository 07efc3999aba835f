"""File helpers shared by every persisted structure."""

import hashlib
import json
import logging
import os
import re
from datetime import datetime, timezone

log = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def rjson(path):
    """Safely read JSON from file. None on absence or corruption."""
    try:
        if path.exists() and path.stat().st_size > 0:
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.debug("unreadable json %s: %s", path, e)
    return None


def atomic_write(path, text, fallback_direct=False, mode=0o600):
    """Write via temp file + rename so readers never see a partial file.

    With ``fallback_direct`` a failed rename is retried as a plain write of
    the target (not atomic, but keeps state moving on odd filesystems).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)
    try:
        os.replace(tmp, path)
    except OSError:
        if not fallback_direct:
            tmp.unlink(missing_ok=True)
            raise
        log.debug("rename failed for %s, writing directly", path)
        path.write_text(text, encoding="utf-8")
        tmp.unlink(missing_ok=True)


def wjson(path, data, **kw):
    atomic_write(path, json.dumps(data, separators=(",", ":")), **kw)


def safe_id(value):
    """Make a session id or category usable as a single path component.

    Ids that are already safe come back unchanged. Anything that had to be
    rewritten or shortened carries a digest of the raw id, so distinct ids
    never share a directory.
    """
    raw = str(value or "")
    if not raw:
        return "unknown"
    s = _UNSAFE.sub("_", raw).strip(".")
    if s == raw and len(s) <= 128:
        return s
    return f"{s[:111]}-{digest(raw)}"


def digest(text, n=16):
    return hashlib.sha1(str(text).encode("utf-8")).hexdigest()[:n]


def parse_iso(s):
    """Parse ISO 8601 to datetime (UTC). Handles Z, +00:00, fractional sec."""
    if not s or s in ("null", ""):
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_epoch(value):
    """Timestamp in seconds from an ISO string or a number (sec or ms)."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return value / 1000.0 if value > 1e12 else float(value)
    dt = parse_iso(value) if isinstance(value, str) else None
    return dt.timestamp() if dt else 0.0
