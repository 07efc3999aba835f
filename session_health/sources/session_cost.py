"""This session's cost and activity as reported by the host (tier 1)."""

from ..health import SessionCost
from .base import DataSource


def _num(d, key, kind):
    try:
        return kind(d.get(key) or 0)
    except (TypeError, ValueError):
        return kind(0)


def fetch(ctx):
    c = ctx.payload.get("cost")
    if not isinstance(c, dict):
        return SessionCost()
    return SessionCost(
        cost_usd=max(0.0, _num(c, "total_cost_usd", float)),
        duration_ms=max(0, _num(c, "total_duration_ms", int)),
        api_duration_ms=max(0, _num(c, "total_api_duration_ms", int)),
        lines_added=max(0, _num(c, "total_lines_added", int)),
        lines_removed=max(0, _num(c, "total_lines_removed", int)),
    )


def source(settings):
    return DataSource(
        id="session_cost", tier=1, category="session_cost", owns="session",
        fetch=fetch, result_type=SessionCost,
        timeout=settings.source_timeout("session_cost", 0.1),
        enabled=settings.source_enabled("session_cost"),
    )
