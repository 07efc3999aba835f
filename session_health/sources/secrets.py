"""Alerts (tier 2): leaked credentials, account switches and slash commands
found by the transcript scanner's extractors."""

from ..health import Alerts
from .base import DataSource

KEEP_SECRETS = 10
KEEP_AUTH = 5
KEEP_COMMANDS = 5


def build_alerts(findings):
    secrets = list(findings.get("secrets") or [])
    auth = list(findings.get("auth_changes") or [])
    cmds = list(findings.get("commands") or [])
    return Alerts(
        secrets_detected=bool(secrets),
        secret_count=len(secrets),
        secret_types=sorted({f.get("type", "") for f in secrets} - {""}),
        secrets=secrets[-KEEP_SECRETS:],
        auth_changes=auth[-KEEP_AUTH:],
        last_auth_account=auth[-1].get("account", "") if auth else "",
        recent_commands=[c.get("command", "") for c in cmds[-KEEP_COMMANDS:]],
    )


async def fetch(ctx):
    if not ctx.transcript_path:
        return Alerts()
    result = await ctx.scan()
    return build_alerts(result.findings)


def source(settings):
    return DataSource(
        id="secrets", tier=2, category="secrets", owns="alerts",
        fetch=fetch, result_type=Alerts,
        timeout=settings.source_timeout("secrets", 1.0),
        enabled=settings.source_enabled("secrets"),
    )
