"""The aggregate record: one typed section per data source.

Each source owns exactly one attribute of ``SessionHealth``. Sections round-
trip through plain dicts so the aggregate can be cached per session and
printed as JSON for the formatting layer.
"""

import logging
import time
from dataclasses import asdict, dataclass, field, fields

from .fsutil import rjson, safe_id, wjson

log = logging.getLogger(__name__)

VERSION = 1


class Section:
    """Dict round-trip for section dataclasses; unknown keys are dropped."""

    @classmethod
    def from_dict(cls, d):
        if isinstance(d, cls):
            return d
        if not isinstance(d, dict):
            return cls()
        names = {f.name for f in fields(cls)}
        try:
            return cls(**{k: v for k, v in d.items() if k in names})
        except TypeError:
            return cls()

    def to_dict(self):
        return asdict(self)


@dataclass
class TranscriptHealth(Section):
    exists: bool = False
    path: str = ""
    size_bytes: int = 0
    last_modified: float = 0.0
    last_modified_ago: str = ""
    synced: bool = False
    message_count: int = 0
    approximate: bool = False
    last_message_preview: str = ""
    last_message_time: float = 0.0
    last_message_ago: str = ""
    turn_number: int = 0


@dataclass
class ModelInfo(Section):
    id: str = ""
    display_name: str = "Claude"
    family: str = ""
    label: str = "Claude"
    source: str = "default"


@dataclass
class ContextInfo(Section):
    window_size: int = 200_000
    tokens_used: int = 0
    tokens_left: int = 0
    percent_used: int = 0
    near_compaction: bool = False


@dataclass
class SessionCost(Section):
    cost_usd: float = 0.0
    duration_ms: int = 0
    api_duration_ms: int = 0
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class QuotaOverride(Section):
    account: str = ""
    weekly_percent: float = None
    reset_day: str = ""
    reset_time: str = ""
    hours_until_reset: int = None
    session_percent: float = None
    path: str = ""


@dataclass
class GitInfo(Section):
    is_repo: bool = False
    branch: str = ""
    ahead: int = 0
    behind: int = 0
    dirty: int = 0
    staged: int = 0
    untracked: int = 0


@dataclass
class BillingInfo(Section):
    active: bool = False
    cost_usd: float = 0.0
    cost_per_hour: float = 0.0
    tokens_per_minute: float = None
    total_tokens: int = 0
    block_start: str = ""
    block_end: str = ""
    percent_elapsed: int = 0
    hours_left: int = 0
    minutes_left: int = 0
    reset_time: str = ""


@dataclass
class QuotaInfo(Section):
    five_hour_percent: float = None
    five_hour_resets_at: str = ""
    weekly_percent: float = None
    weekly_resets_at: str = ""
    per_model: dict = field(default_factory=dict)


@dataclass
class Alerts(Section):
    secrets_detected: bool = False
    secret_count: int = 0
    secret_types: list = field(default_factory=list)
    secrets: list = field(default_factory=list)
    auth_changes: list = field(default_factory=list)
    last_auth_account: str = ""
    recent_commands: list = field(default_factory=list)


@dataclass
class SourceStatus(Section):
    status: str = "unknown"
    age: float = None
    error: str = ""


SECTIONS = {
    "transcript": TranscriptHealth,
    "model": ModelInfo,
    "context": ContextInfo,
    "session": SessionCost,
    "quota_override": QuotaOverride,
    "git": GitInfo,
    "billing": BillingInfo,
    "quota": QuotaInfo,
    "alerts": Alerts,
}


@dataclass
class SessionHealth:
    session_id: str = ""
    project_path: str = ""
    transcript: TranscriptHealth = field(default_factory=TranscriptHealth)
    model: ModelInfo = field(default_factory=ModelInfo)
    context: ContextInfo = field(default_factory=ContextInfo)
    session: SessionCost = field(default_factory=SessionCost)
    quota_override: QuotaOverride = field(default_factory=QuotaOverride)
    git: GitInfo = field(default_factory=GitInfo)
    billing: BillingInfo = field(default_factory=BillingInfo)
    quota: QuotaInfo = field(default_factory=QuotaInfo)
    alerts: Alerts = field(default_factory=Alerts)
    sources: dict = field(default_factory=dict)
    gathered_at: float = 0.0
    duration_ms: int = 0
    version: int = VERSION

    @property
    def weekly_percent(self):
        """Override from the user's quota document wins over the derived value."""
        if self.quota_override.weekly_percent is not None:
            return self.quota_override.weekly_percent
        return self.quota.weekly_percent

    def to_dict(self):
        d = asdict(self)
        d["weekly_percent"] = self.weekly_percent
        return d

    @classmethod
    def from_dict(cls, d):
        h = cls(session_id=str(d.get("session_id") or ""),
                project_path=str(d.get("project_path") or ""))
        for name, kind in SECTIONS.items():
            setattr(h, name, kind.from_dict(d.get(name)))
        h.sources = {k: SourceStatus.from_dict(v)
                     for k, v in (d.get("sources") or {}).items()}
        h.gathered_at = float(d.get("gathered_at") or 0.0)
        h.duration_ms = int(d.get("duration_ms") or 0)
        return h


class HealthStore:
    """Last aggregate per session: ``sessions/<session>/health.json``."""

    def __init__(self, directory):
        self.dir = directory

    def path(self, session_id):
        return self.dir / safe_id(session_id) / "health.json"

    def load(self, session_id):
        d = rjson(self.path(session_id))
        if not isinstance(d, dict) or d.get("version") != VERSION:
            return None
        return SessionHealth.from_dict(d)

    def save(self, health):
        health.gathered_at = health.gathered_at or time.time()
        try:
            wjson(self.path(health.session_id), health.to_dict(), fallback_direct=True)
        except OSError as e:
            log.warning("could not save health for %s: %s", health.session_id, e)
            return False
        return True
