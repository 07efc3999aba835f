"""User-maintained quota document (tier 1).

``~/.claude/config/subscription.toml``::

    active_account = "work"

    [accounts.work.weekly_all_models]
    percent_used = 42
    reset_day = "Thursday"
    reset_time = "09:00"

    [accounts.work.current_session]
    percent_used = 12

When it names a weekly percentage for the active account, that number is
authoritative over anything derived from the usage endpoint.
"""

import logging
from datetime import datetime

from ..config import read_toml
from ..health import QuotaOverride
from .base import DataSource

log = logging.getLogger(__name__)

DAYS = {"sun": 6, "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5}


def _get(d, snake, camel):
    v = d.get(snake)
    return d.get(camel) if v is None else v


def _percent(d):
    v = _get(d, "percent_used", "percentUsed")
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return max(0.0, min(100.0, float(v)))


def hours_until_reset(reset_day, reset_time, now=None):
    """Whole hours until the next ``reset_day`` at ``reset_time`` (local); None if unparseable."""
    day = DAYS.get((reset_day or "")[:3].lower())
    if day is None:
        return None
    try:
        hh, mm = (int(x) for x in (reset_time or "00:00").split(":")[:2])
    except ValueError:
        return None
    now = now or datetime.now()
    days = (day - now.weekday()) % 7
    reset_min = hh * 60 + mm
    now_min = now.hour * 60 + now.minute
    if days == 0 and now_min >= reset_min:
        days = 7
    return max(0, (days * 1440 + reset_min - now_min) // 60)


def parse(doc, path=""):
    accounts = doc.get("accounts")
    if not isinstance(accounts, dict) or not accounts:
        return QuotaOverride(path=str(path))
    active = _get(doc, "active_account", "activeAccount") or next(iter(accounts))
    acct = accounts.get(active)
    if not isinstance(acct, dict):
        log.info("quota document: active account %r not found", active)
        return QuotaOverride(account=str(active), path=str(path))

    weekly = _get(acct, "weekly_all_models", "weeklyAllModels") or {}
    session = _get(acct, "current_session", "currentSession") or {}
    o = QuotaOverride(account=str(active), path=str(path))
    if isinstance(weekly, dict):
        o.weekly_percent = _percent(weekly)
        o.reset_day = str(_get(weekly, "reset_day", "resetDay") or "")[:3]
        o.reset_time = str(_get(weekly, "reset_time", "resetTime") or "")
        o.hours_until_reset = hours_until_reset(o.reset_day, o.reset_time)
    if isinstance(session, dict):
        o.session_percent = _percent(session)
    return o


def fetch(ctx):
    path = ctx.settings.quota_path
    if not path.exists():
        return QuotaOverride()
    try:
        doc = read_toml(path)
    except (OSError, ValueError) as e:
        log.warning("unreadable quota document %s: %s", path, e)
        return QuotaOverride(path=str(path))
    return parse(doc, path)


def source(settings):
    return DataSource(
        id="quota_override", tier=1, category="quota_override", owns="quota_override",
        fetch=fetch, result_type=QuotaOverride,
        timeout=settings.source_timeout("quota_override", 0.2),
        enabled=settings.source_enabled("quota_override"),
    )
