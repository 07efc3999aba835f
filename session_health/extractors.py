"""Content extractors run by the transcript scanner over newly appended records.

Each extractor sees only the records parsed in this scan and returns a list
of findings. Every finding carries a stable ``fingerprint``; the scanner
drops findings whose fingerprint it has already stored for the session.
"""

import hashlib
import re
from collections import namedtuple

# offset: absolute byte offset of the line in the file; data: decoded JSON object
Record = namedtuple("Record", "offset data")

HUMAN_ROLES = ("user", "human")


# ═══════════════════════ RECORD HELPERS ═══════════════════════

def is_human(data):
    """Attributable to the human participant (not a tool result or assistant turn)."""
    if data.get("type") in HUMAN_ROLES or data.get("role") in HUMAN_ROLES:
        return True
    msg = data.get("message")
    return isinstance(msg, dict) and msg.get("role") in HUMAN_ROLES and "type" not in data


def record_text(data):
    """First non-empty text in a record: message.content (str or blocks), then text."""
    msg = data.get("message")
    if isinstance(msg, dict):
        content = msg.get("content")
        if isinstance(content, str) and content.strip():
            return content
        if isinstance(content, list):
            for block in content:
                if (isinstance(block, dict) and block.get("type") == "text"
                        and isinstance(block.get("text"), str) and block["text"].strip()):
                    return block["text"]
    elif isinstance(msg, str) and msg.strip():
        return msg
    for k in ("text", "content"):
        v = data.get(k)
        if isinstance(v, str) and v.strip():
            return v
    return ""


def flatten(data):
    """All string leaves of a JSON value joined by spaces."""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        return " ".join(flatten(v) for v in data.values())
    if isinstance(data, list):
        return " ".join(flatten(v) for v in data)
    if data is None or isinstance(data, bool):
        return ""
    return str(data)


def fingerprint(kind, value):
    return f"{kind}_{hashlib.sha256(value.encode('utf-8')).hexdigest()[:12]}"


# ═══════════════════════ SECRETS ═══════════════════════

SECRET_PATTERNS = [
    (re.compile(r"\bghp_[A-Za-z0-9_]{36,}\b"), "GitHub Token"),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{22}_[A-Za-z0-9]{59}\b"), "GitHub Token"),
    (re.compile(r"\b(?:AKIA|ASIA|AROA|AIDA)[A-Z0-9]{16}\b"), "AWS Key"),
    (re.compile(r"\bsk_(?:live|test)_[A-Za-z0-9]{24,}\b"), "Stripe API Key"),
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{20,}\b"), "Anthropic API Key"),
    (re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{10,}\b"), "Slack Token"),
    (re.compile(r"-----BEGIN (?:RSA |EC |OPENSSH )?PRIVATE KEY-----[\s\S]*?"
                r"-----END (?:RSA |EC |OPENSSH )?PRIVATE KEY-----"), "Private Key"),
]


def redact(secret):
    """first4...last4; too-short values are fully masked."""
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


class SecretDetector:
    id = "secrets"

    def extract(self, records):
        found = []
        seen = set()
        for rec in records:
            text = flatten(rec.data)
            for rx, kind in SECRET_PATTERNS:
                for m in rx.finditer(text):
                    value = m.group(0)
                    fp = fingerprint(kind.split()[0].lower(), value)
                    if fp in seen:
                        continue
                    seen.add(fp)
                    found.append({"type": kind, "fingerprint": fp,
                                  "offset": rec.offset, "match": redact(value)})
        return found


# ═══════════════════════ COMMANDS ═══════════════════════

COMMAND_RE = re.compile(r"(?:^|\s)/([a-z][a-z0-9-]*)(?:[ \t]+([^\n]*))?", re.I)


class CommandDetector:
    """Slash commands typed by the human (``/login``, ``/clear``...)."""

    id = "commands"

    def extract(self, records):
        found = []
        for rec in records:
            if not is_human(rec.data):
                continue
            text = record_text(rec.data).strip()
            m = COMMAND_RE.match(text)
            if not m:
                continue
            name = "/" + m.group(1).lower()
            args = (m.group(2) or "").split()
            found.append({
                "command": name,
                "args": args,
                "timestamp": rec.data.get("timestamp") or "",
                "offset": rec.offset,
                "fingerprint": fingerprint("cmd", f"{rec.offset}:{name}"),
            })
        return found


# ═══════════════════════ AUTH CHANGES ═══════════════════════

AUTH_COMMANDS = ("/login", "/swap-auth")
LOOKAHEAD = 10
_ACCOUNT = r"([A-Za-z0-9._+-]+@[A-Za-z0-9.-]+|[A-Za-z0-9.-]+\.[a-z]{2,})"
SUCCESS_PATTERNS = [
    re.compile(r"Login successful for\s+" + _ACCOUNT, re.I),
    re.compile(r"Successfully logged in as\s+" + _ACCOUNT, re.I),
    re.compile(r"Switched to account\s+" + _ACCOUNT, re.I),
    re.compile(r"Now using account\s+" + _ACCOUNT, re.I),
]


class AuthChangeDetector:
    """An auth command followed within a few records by a success confirmation."""

    id = "auth_changes"

    def extract(self, records):
        found = []
        for i, rec in enumerate(records):
            text = record_text(rec.data).lower()
            if not any(c in text for c in AUTH_COMMANDS):
                continue
            for nxt in records[i + 1:i + LOOKAHEAD]:
                hit = self._success(flatten(nxt.data))
                if hit:
                    found.append({
                        "account": hit,
                        "timestamp": nxt.data.get("timestamp") or "",
                        "offset": nxt.offset,
                        "fingerprint": fingerprint("auth", f"{nxt.offset}:{hit}"),
                    })
                    break
        return found

    @staticmethod
    def _success(text):
        for rx in SUCCESS_PATTERNS:
            m = rx.search(text)
            if m:
                return m.group(1)
        return None


def default_extractors():
    return [SecretDetector(), CommandDetector(), AuthChangeDetector()]
