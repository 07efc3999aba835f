"""Transcript health (tier 2): scanner summary plus file stats."""

import time

from ..health import TranscriptHealth
from .base import DataSource

SYNC_WINDOW = 60  # Written within this many seconds counts as in sync


def format_ago(seconds):
    s = max(0, int(seconds))
    if s < 60:
        return f"{s}s"
    if s < 3600:
        return f"{s // 60}m"
    if s < 86400:
        return f"{s // 3600}h"
    return f"{s // 86400}d"


def summarize(result, now=None):
    now = time.time() if now is None else now
    if not result.exists:
        return TranscriptHealth(path=result.path)
    mtime = result.mtime_ns / 1e9
    msg = result.last_message
    return TranscriptHealth(
        exists=True,
        path=result.path,
        size_bytes=result.size,
        last_modified=mtime,
        last_modified_ago=format_ago(now - mtime),
        synced=now - mtime < SYNC_WINDOW,
        message_count=result.message_count,
        approximate=result.approximate,
        last_message_preview=msg.preview,
        last_message_time=msg.timestamp,
        last_message_ago=format_ago(now - msg.timestamp) if msg.timestamp else "",
        turn_number=msg.turn_number,
    )


async def fetch(ctx):
    if not ctx.transcript_path:
        return TranscriptHealth()
    return summarize(await ctx.scan())


def source(settings):
    return DataSource(
        id="transcript", tier=2, category="transcript", owns="transcript",
        fetch=fetch, result_type=TranscriptHealth,
        timeout=settings.source_timeout("transcript", 1.0),
        enabled=settings.source_enabled("transcript"),
    )
