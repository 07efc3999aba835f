"""Settings for the session-health data layer.

Defaults live in the ``Settings`` dataclass; an optional TOML file
(``~/.claude/statusline.toml``) and a handful of ``STATUSLINE_*`` environment
variables override them. Nothing here mutates module globals: ``load_config``
returns a fresh ``Settings`` that the invocation context carries around.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

log = logging.getLogger(__name__)

BASE_DIR = Path("~/.claude/session-health")
CONFIG_PATH = Path("~/.claude/statusline.toml")
QUOTA_PATH = Path("~/.claude/config/subscription.toml")
SETTINGS_PATH = Path("~/.claude/settings.json")

DEADLINE = 1.5              # Overall invocation budget (sec)
LINGER = 30.0               # Time abandoned refreshes may finish after output (sec)
RESULT_TTL = 10.0           # In-process scan result memo
RESULT_MAX_ENTRIES = 100
RESULT_MAX_BYTES = 10_000_000
MIRROR_TTL = 10.0           # In-memory mirror of shared cache files
MAX_LOCK_AGE = 120.0        # Locks older than this are reclaimed even if the PID lives
LARGE_FILE_BYTES = 5_000_000
LARGE_DELTA_BYTES = 1_000_000
TAIL_BYTES = 65_536
AVG_LINE_BYTES = 1000       # Assumed average transcript line for approximate counts
MAX_FINDINGS = 200          # Per extractor, kept in the checkpoint
MAINTENANCE_INTERVAL = 6 * 3600
MAX_SESSIONS = 200
SESSION_MAX_AGE = 7 * 86400

BILLING_COMMAND = ("ccusage", "blocks", "--json", "--active")


@dataclass
class Settings:
    base_dir: Path = field(default_factory=lambda: BASE_DIR.expanduser())
    deadline: float = DEADLINE
    linger: float = LINGER
    detach: bool = True  # Gather in a forked worker
    result_ttl: float = RESULT_TTL
    result_max_entries: int = RESULT_MAX_ENTRIES
    result_max_bytes: int = RESULT_MAX_BYTES
    mirror_ttl: float = MIRROR_TTL
    max_lock_age: float = MAX_LOCK_AGE
    large_file_bytes: int = LARGE_FILE_BYTES
    large_delta_bytes: int = LARGE_DELTA_BYTES
    tail_bytes: int = TAIL_BYTES
    avg_line_bytes: int = AVG_LINE_BYTES
    max_findings: int = MAX_FINDINGS
    maintenance_interval: float = MAINTENANCE_INTERVAL
    max_sessions: int = MAX_SESSIONS
    session_max_age: float = SESSION_MAX_AGE
    quota_path: Path = field(default_factory=lambda: QUOTA_PATH.expanduser())
    settings_path: Path = field(default_factory=lambda: SETTINGS_PATH.expanduser())
    billing_command: tuple = BILLING_COMMAND
    log_level: str = "WARNING"
    # Per-category overrides: {"billing": {"ttl": 60, "cooldown": 30}}
    categories: dict = field(default_factory=dict)
    # Per-source overrides: {"git": {"timeout": 1.0, "enabled": False}}
    sources: dict = field(default_factory=dict)

    def source_timeout(self, source_id, default):
        return _number(self.sources.get(source_id, {}), "timeout", default)

    def source_enabled(self, source_id):
        return bool(self.sources.get(source_id, {}).get("enabled", True))

    # Layout under base_dir

    @property
    def cache_dir(self):
        return self.base_dir / "cache"

    @property
    def sessions_dir(self):
        return self.base_dir / "sessions"

    @property
    def scanners_dir(self):
        return self.base_dir / "scanners"

    @property
    def locks_dir(self):
        return self.base_dir / "locks"

    @property
    def cooldowns_dir(self):
        return self.base_dir / "cooldowns"

    @property
    def log_path(self):
        return self.base_dir / "statusline.log"


# ═══════════════════════ TOML CONFIG ═══════════════════════

def read_toml(path):
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore
    with open(path, "rb") as f:
        return tomllib.load(f)


def _table(cfg, name):
    t = cfg.get(name, {})
    if not isinstance(t, dict):
        log.warning("ignoring [%s]: not a table", name)
        return {}
    return t


def _number(table, key, default, kind=float):
    """``table[key]`` as ``kind``; a value that doesn't convert keeps the default."""
    if key not in table:
        return default
    try:
        return kind(table[key])
    except (TypeError, ValueError, OverflowError):
        log.warning("ignoring %s = %r: not a number", key, table[key])
        return default


def load_config(path=None, env=None):
    """Load optional TOML config and environment overrides on top of defaults."""
    env = os.environ if env is None else env
    s = Settings()

    cfg_path = Path(path or env.get("STATUSLINE_CONFIG") or CONFIG_PATH).expanduser()
    cfg = {}
    if cfg_path.exists():
        try:
            cfg = read_toml(cfg_path)
        except (OSError, ValueError) as e:
            log.warning("ignoring unreadable config %s: %s", cfg_path, e)
            cfg = {}

    r = _table(cfg, "runtime")
    if isinstance(r.get("base_dir"), str):
        s.base_dir = Path(r["base_dir"]).expanduser()
    s.deadline = _number(r, "deadline", s.deadline)
    s.linger = _number(r, "linger", s.linger)
    s.detach = bool(r.get("detach", s.detach))

    sc = _table(cfg, "scanner")
    s.large_file_bytes = _number(sc, "large_file_bytes", s.large_file_bytes, int)
    s.large_delta_bytes = _number(sc, "large_delta_bytes", s.large_delta_bytes, int)
    s.tail_bytes = _number(sc, "tail_bytes", s.tail_bytes, int)
    s.avg_line_bytes = max(1, _number(sc, "avg_line_bytes", s.avg_line_bytes, int))
    s.max_findings = _number(sc, "max_findings", s.max_findings, int)

    c = _table(cfg, "cache")
    s.result_ttl = _number(c, "result_ttl", s.result_ttl)
    s.result_max_entries = _number(c, "result_max_entries", s.result_max_entries, int)
    s.result_max_bytes = _number(c, "result_max_bytes", s.result_max_bytes, int)
    s.mirror_ttl = _number(c, "mirror_ttl", s.mirror_ttl)
    s.max_lock_age = _number(c, "max_lock_age", s.max_lock_age)

    m = _table(cfg, "maintenance")
    s.maintenance_interval = _number(m, "interval", s.maintenance_interval)
    s.max_sessions = _number(m, "max_sessions", s.max_sessions, int)
    s.session_max_age = _number(m, "session_max_age", s.session_max_age)

    q = _table(cfg, "quota")
    if isinstance(q.get("path"), str):
        s.quota_path = Path(q["path"]).expanduser()

    b = _table(cfg, "billing")
    cmd = b.get("command")
    if isinstance(cmd, list) and cmd and all(isinstance(a, str) for a in cmd):
        s.billing_command = tuple(cmd)

    s.log_level = str(_table(cfg, "logging").get("level", s.log_level)).upper()

    cats = cfg.get("categories", {})
    if isinstance(cats, dict):
        s.categories = {k: v for k, v in cats.items() if isinstance(v, dict)}
    srcs = cfg.get("sources", {})
    if isinstance(srcs, dict):
        s.sources = {k: v for k, v in srcs.items() if isinstance(v, dict)}

    return apply_env(s, env)


def apply_env(s, env):
    """Environment variables win over the TOML file."""
    home = env.get("STATUSLINE_HOME", "")
    if home:
        s = replace(s, base_dir=Path(home).expanduser())
    dl = env.get("STATUSLINE_DEADLINE", "")
    try:
        if dl and float(dl) > 0:
            s = replace(s, deadline=float(dl))
    except ValueError:
        log.warning("ignoring STATUSLINE_DEADLINE=%r", dl)
    if env.get("STATUSLINE_DEBUG", "") not in ("", "0"):
        s = replace(s, log_level="DEBUG")
    return s
