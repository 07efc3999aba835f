"""Active billing block from the ccusage metering CLI (tier 3, global).

``ccusage blocks --json --active`` takes seconds and reports the same numbers
to every pane, so it is fetched by one process and shared through the cache.
"""

import json
import logging
import shutil
from datetime import datetime, timezone

from ..fsutil import parse_iso
from ..health import BillingInfo
from ..subprocs import run_command, which_any
from .base import DataSource

log = logging.getLogger(__name__)


def billing_command(settings):
    """Configured command, with ccusage run through bunx/npx when not installed."""
    cmd = list(settings.billing_command)
    if cmd and cmd[0] == "ccusage" and not shutil.which("ccusage"):
        prefix = which_any(("bunx", "ccusage"), ("npx", "-y", "ccusage"))
        if prefix:
            cmd = prefix + cmd[1:]
    return cmd


def _nonneg(v):
    try:
        return max(0.0, float(v))
    except (TypeError, ValueError):
        return 0.0


def parse_blocks(text, now=None):
    """BillingInfo for the active block; ``active=False`` when there is none."""
    data = json.loads(text)
    blocks = data.get("blocks") if isinstance(data, dict) else data
    if not isinstance(blocks, list):
        raise ValueError("unexpected ccusage output")
    block = next((b for b in blocks if isinstance(b, dict) and b.get("isActive")), None)
    if block is None:
        return BillingInfo()

    burn = block.get("burnRate") or {}
    info = BillingInfo(
        active=True,
        cost_usd=_nonneg(block.get("costUSD")),
        cost_per_hour=_nonneg(burn.get("costPerHour")),
        tokens_per_minute=(_nonneg(burn["tokensPerMinute"])
                           if burn.get("tokensPerMinute") is not None else None),
        total_tokens=int(_nonneg(block.get("totalTokens"))),
        block_start=block.get("startTime") or "",
        # usageLimitResetTime is usually null; the block end is the reset
        block_end=block.get("usageLimitResetTime") or block.get("endTime") or "",
    )

    start, end = parse_iso(info.block_start), parse_iso(info.block_end)
    if start and end:
        now = now or datetime.now(timezone.utc)
        total = (end - start).total_seconds()
        elapsed = (now - start).total_seconds()
        remaining = max(0.0, (end - now).total_seconds())
        if total > 0:
            info.percent_elapsed = min(100, max(0, int(elapsed / total * 100)))
        info.hours_left = int(remaining // 3600)
        info.minutes_left = int(remaining % 3600 // 60)
        info.reset_time = end.astimezone(timezone.utc).strftime("%H:%M")
    return info


async def fetch(ctx):
    return parse_blocks(await run_command(billing_command(ctx.settings)))


def source(settings):
    return DataSource(
        id="billing", tier=3, category="billing", owns="billing",
        fetch=fetch, result_type=BillingInfo,
        timeout=settings.source_timeout("billing", 20.0),
        enabled=settings.source_enabled("billing"),
    )
