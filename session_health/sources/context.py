"""Context window usage from the host's stdin payload (tier 1)."""

from ..health import ContextInfo
from .base import DataSource

DEFAULT_WINDOW = 200_000
MIN_WINDOW, MAX_WINDOW = 10_000, 500_000
COMPACTION = 0.78     # Host compacts the conversation at this share of the window
NEAR_PERCENT = 70     # Of the compaction point


def _tokens(usage, key):
    try:
        return max(0, int(usage.get(key) or 0))
    except (TypeError, ValueError):
        return 0


def calculate(payload):
    """Tokens left until compaction; percent is of the compaction point, not the window."""
    info = ContextInfo()
    cw = payload.get("context_window")
    if not isinstance(cw, dict):
        return info

    size = cw.get("context_window_size") or DEFAULT_WINDOW
    if not isinstance(size, (int, float)) or not MIN_WINDOW <= size <= MAX_WINDOW:
        size = DEFAULT_WINDOW
    info.window_size = int(size)

    cu = cw.get("current_usage") or {}
    if not isinstance(cu, dict):
        cu = {}
    used = (_tokens(cu, "input_tokens") + _tokens(cu, "output_tokens")
            + _tokens(cu, "cache_read_input_tokens"))
    if used > info.window_size * 1.5:
        # Garbage counts; treat as a full window
        used = info.window_size
    info.tokens_used = used

    threshold = int(info.window_size * COMPACTION)
    info.tokens_left = max(0, threshold - used)
    info.percent_used = min(100, used * 100 // threshold) if threshold > 0 else 0
    info.near_compaction = info.percent_used >= NEAR_PERCENT
    return info


def fetch(ctx):
    return calculate(ctx.payload)


def source(settings):
    return DataSource(
        id="context", tier=1, category="context", owns="context",
        fetch=fetch, result_type=ContextInfo,
        timeout=settings.source_timeout("context", 0.1),
        enabled=settings.source_enabled("context"),
    )
