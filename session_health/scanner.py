"""Incremental scanner for the append-only per-session transcript (JSONL).

Only bytes appended since the last checkpoint are read. A file that shrank
below the checkpoint offset was truncated or rotated and is rescanned from
the start. Files (or deltas) too large to parse within an invocation get a
bounded tail read and an approximate message count.
"""

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, field, replace

from .extractors import Record, default_extractors, is_human, record_text
from .fsutil import to_epoch
from .state import ScanCheckpoint

log = logging.getLogger(__name__)

PREVIEW_LEN = 80
_WS = re.compile(r"\s+")


@dataclass
class MessageInfo:
    timestamp: float = 0.0
    preview: str = ""
    sender: str = "unknown"
    turn_number: int = 0

    @classmethod
    def from_dict(cls, d):
        d = d or {}
        return cls(
            timestamp=float(d.get("timestamp") or 0.0),
            preview=str(d.get("preview") or ""),
            sender=str(d.get("sender") or "unknown"),
            turn_number=int(d.get("turn_number") or 0),
        )


@dataclass
class ScanResult:
    session_id: str
    path: str
    exists: bool = True
    size: int = 0
    mtime_ns: int = 0
    message_count: int = 0
    last_message: MessageInfo = field(default_factory=MessageInfo)
    findings: dict = field(default_factory=dict)
    approximate: bool = False
    bytes_read: int = 0
    lines_parsed: int = 0
    mode: str = "full"
    cache_hit: bool = False


def preview(text):
    """Whitespace-collapsed single line, at most PREVIEW_LEN chars."""
    s = _WS.sub(" ", text).strip()
    if len(s) > PREVIEW_LEN:
        return s[:PREVIEW_LEN - 2] + ".."
    return s


def parse_lines(chunk, base):
    """Decode complete newline-terminated lines of ``chunk``.

    Returns (records, lines_seen, consumed). ``consumed`` stops at the last
    newline, so a partially written final line is left for the next scan.
    """
    records = []
    lines = 0
    pos = 0
    while True:
        nl = chunk.find(b"\n", pos)
        if nl < 0:
            break
        raw = chunk[pos:nl].strip()
        off = base + pos
        pos = nl + 1
        if not raw:
            continue
        lines += 1
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        if isinstance(data, dict):
            records.append(Record(off, data))
    return records, lines, pos


class IncrementalLogScanner:
    def __init__(self, state, results, settings, extractors=None):
        self.state = state
        self.results = results
        self.settings = settings
        self.extractors = default_extractors() if extractors is None else list(extractors)
        ids = [e.id for e in self.extractors]
        if len(ids) != len(set(ids)) or "last_message" in ids:
            raise ValueError(f"extractor ids must be unique: {ids}")

    def scan(self, session_id, path):
        """Summary of the transcript; never raises."""
        path = str(path)
        try:
            st = os.stat(path)
        except OSError:
            return ScanResult(session_id, path, exists=False, mode="missing")

        key = (session_id, path)
        hit = self.results.get(key)
        if hit is not None and hit.size == st.st_size and hit.mtime_ns == st.st_mtime_ns:
            return replace(hit, bytes_read=0, lines_parsed=0, cache_hit=True, mode="cached")

        cp = None
        try:
            cp = self.state.load(session_id, path)
            result, new_cp = self._scan(session_id, path, st, cp)
        except Exception as e:
            log.warning("scan of %s failed, keeping previous summary: %s", path, e)
            return self._error_summary(session_id, path, cp, st)

        if new_cp is not None:
            self.state.save(session_id, new_cp)
        self.results.set(key, result)
        return result

    # ═══════════════════════ SCAN MODES ═══════════════════════

    def _scan(self, session_id, path, st, cp):
        s = self.settings
        size = st.st_size
        if cp is not None and not cp.path:
            cp.path = path

        if cp is not None and cp.size == size and cp.mtime_ns == st.st_mtime_ns:
            return self._summary(session_id, path, cp, st, mode="unchanged"), None

        if cp is None or size < cp.byte_offset:
            if cp is not None:
                log.info("%s shrank (%d < %d), rescanning", path, size, cp.byte_offset)
            base = ScanCheckpoint(path=path)
            if size > s.large_file_bytes:
                return self._tail(session_id, path, st, base, size // s.avg_line_bytes)
            return self._read(session_id, path, st, base, 0, "full")

        delta = size - cp.byte_offset
        if delta > s.large_delta_bytes:
            log.info("%s grew by %d bytes, tail scan", path, delta)
            return self._tail(session_id, path, st, cp,
                              cp.message_count + delta // s.avg_line_bytes)
        return self._read(session_id, path, st, cp, cp.byte_offset, "incremental")

    def _read(self, session_id, path, st, cp, start, mode):
        chunk = self._read_range(path, start, st.st_size)
        records, lines, consumed = parse_lines(chunk, start)
        count = cp.message_count + len(records)
        last = self._last_message(records, cp.message_count) or self._prev_message(cp)
        findings = self._extract(records, cp.extractor_data)
        new_cp = self._checkpoint(cp, start + consumed, st, count, cp.approximate, last, findings)
        return self._result(session_id, path, new_cp, st, len(chunk), lines, mode), new_cp

    def _tail(self, session_id, path, st, cp, approx_count):
        start = max(0, st.st_size - self.settings.tail_bytes)
        chunk = self._read_range(path, start, st.st_size)
        skip = 0
        if start > 0:
            # First line is almost certainly cut; start after it.
            nl = chunk.find(b"\n")
            skip = nl + 1 if nl >= 0 else len(chunk)
        records, lines, consumed = parse_lines(chunk[skip:], start + skip)
        count = max(approx_count, cp.message_count)
        last = self._last_message(records, count - len(records)) or self._prev_message(cp)
        findings = self._extract(records, cp.extractor_data)
        new_cp = self._checkpoint(cp, start + skip + consumed, st, count, True, last, findings)
        return self._result(session_id, path, new_cp, st, len(chunk), lines, "tail"), new_cp

    def _read_range(self, path, start, end):
        if end <= start:
            return b""
        with open(path, "rb") as f:
            f.seek(start)
            return f.read(end - start)

    # ═══════════════════════ HELPERS ═══════════════════════

    def _last_message(self, records, count_before):
        for i in range(len(records) - 1, -1, -1):
            data = records[i].data
            if not is_human(data):
                continue
            text = record_text(data)
            if not text.strip():
                continue
            return MessageInfo(
                timestamp=to_epoch(data.get("timestamp")),
                preview=preview(text),
                sender="human",
                turn_number=count_before + i + 1,
            )
        return None

    @staticmethod
    def _prev_message(cp):
        return MessageInfo.from_dict(cp.extractor_data.get("last_message"))

    def _extract(self, records, previous):
        out = {}
        for ext in self.extractors:
            known = list(previous.get(ext.id) or [])
            if records:
                try:
                    new = ext.extract(records)
                except Exception as e:
                    log.warning("extractor %s failed: %s", ext.id, e)
                    new = []
                seen = {f.get("fingerprint") for f in known}
                for f in new:
                    if f.get("fingerprint") not in seen:
                        seen.add(f.get("fingerprint"))
                        known.append(f)
            out[ext.id] = known[-self.settings.max_findings:]
        return out

    @staticmethod
    def _checkpoint(cp, offset, st, count, approximate, last, findings):
        data = dict(findings)
        data["last_message"] = asdict(last)
        return ScanCheckpoint(
            path=cp.path,
            byte_offset=offset,
            size=st.st_size,
            mtime_ns=st.st_mtime_ns,
            message_count=count,
            approximate=approximate,
            extractor_data=data,
        )

    def _result(self, session_id, path, cp, st, bytes_read, lines, mode):
        findings = {k: v for k, v in cp.extractor_data.items() if k != "last_message"}
        return ScanResult(
            session_id=session_id,
            path=path,
            size=st.st_size,
            mtime_ns=st.st_mtime_ns,
            message_count=cp.message_count,
            last_message=self._prev_message(cp),
            findings=findings,
            approximate=cp.approximate,
            bytes_read=bytes_read,
            lines_parsed=lines,
            mode=mode,
        )

    def _summary(self, session_id, path, cp, st, mode):
        if cp is None:
            return ScanResult(session_id, path, size=st.st_size,
                              mtime_ns=st.st_mtime_ns, mode=mode)
        return self._result(session_id, path, cp, st, 0, 0, mode)

    def _error_summary(self, session_id, path, cp, st):
        try:
            return self._summary(session_id, path, cp, st, mode="error")
        except Exception as e:
            log.warning("previous summary of %s unusable: %s", path, e)
            return self._summary(session_id, path, None, st, mode="error")
