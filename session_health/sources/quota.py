"""Five-hour and weekly utilization from the OAuth usage endpoint (tier 3)."""

import json
import logging
import os
import shutil
import sys
from pathlib import Path

from ..fsutil import rjson
from ..health import QuotaInfo
from ..subprocs import CommandError, run_command
from .base import DataSource
from .model import FAMILIES

log = logging.getLogger(__name__)

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
CREDENTIALS_PATH = Path("~/.claude/.credentials.json")
KEYCHAIN_SERVICE = "Claude Code-credentials"


class NoCredentials(Exception):
    pass


def token_from_credentials(creds):
    """accessToken at top level, else under claudeAiOauth."""
    if not isinstance(creds, dict):
        return None
    tok = creds.get("accessToken")
    if not tok:
        oauth = creds.get("claudeAiOauth") or {}
        tok = oauth.get("accessToken") if isinstance(oauth, dict) else None
    return tok or None


async def get_oauth_token(env=None):
    """Get OAuth token from env var, platform keychain or the credentials file."""
    env = os.environ if env is None else env
    env_tok = env.get("CLAUDE_OAUTH_TOKEN")
    if env_tok:
        return env_tok

    argv = None
    if sys.platform == "darwin":
        argv = ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"]
    elif sys.platform.startswith("linux") and shutil.which("secret-tool"):
        # libsecret / GNOME Keyring
        argv = ["secret-tool", "lookup", "service", KEYCHAIN_SERVICE]

    if argv:
        try:
            out = (await run_command(argv, timeout=5)).strip()
        except (CommandError, OSError) as e:
            log.debug("keychain lookup failed: %s", e)
            out = ""
        if out:
            try:
                return token_from_credentials(json.loads(out))
            except ValueError:
                # Raw token rather than keytar JSON
                return out

    return token_from_credentials(rjson(CREDENTIALS_PATH.expanduser()))


def _util(d):
    v = (d or {}).get("utilization")
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def parse_usage(data):
    if not isinstance(data, dict):
        raise ValueError("unexpected usage payload")
    five = data.get("five_hour") or {}
    week = data.get("seven_day") or {}
    q = QuotaInfo(
        five_hour_percent=_util(five),
        five_hour_resets_at=five.get("resets_at") or "",
        weekly_percent=_util(week),
        weekly_resets_at=week.get("resets_at") or "",
    )
    for fam in FAMILIES:
        u = _util(data.get(f"seven_day_{fam}"))
        if u is not None:
            q.per_model[fam] = u
    return q


async def fetch(ctx):
    token = await get_oauth_token()
    if not token:
        raise NoCredentials("no OAuth token available")
    out = await run_command([
        "curl", "-sf", "--connect-timeout", "5", "--max-time", "10",
        "-H", f"Authorization: Bearer {token}",
        "-H", "anthropic-beta: oauth-2025-04-20",
        USAGE_URL,
    ])
    return parse_usage(json.loads(out))


def source(settings):
    return DataSource(
        id="quota", tier=3, category="quota", owns="quota",
        fetch=fetch, result_type=QuotaInfo,
        timeout=settings.source_timeout("quota", 15.0),
        enabled=settings.source_enabled("quota"),
    )
