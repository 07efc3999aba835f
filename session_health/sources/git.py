"""Repository status of the project directory (tier 3, shared per project)."""

import logging
import os

from ..health import GitInfo
from ..subprocs import CommandError, run_command
from .base import DataSource

log = logging.getLogger(__name__)

STATUS = ("git", "status", "--porcelain=v2", "--branch")
NOT_A_REPO = 128


def parse_status(text):
    """Parse ``git status --porcelain=v2 --branch``."""
    g = GitInfo(is_repo=True)
    for line in text.splitlines():
        if line.startswith("# branch.head "):
            head = line[len("# branch.head "):].strip()
            g.branch = "" if head == "(detached)" else head
        elif line.startswith("# branch.ab "):
            for part in line[len("# branch.ab "):].split():
                try:
                    n = abs(int(part))
                except ValueError:
                    continue
                if part.startswith("+"):
                    g.ahead = n
                else:
                    g.behind = n
        elif line.startswith(("1 ", "2 ", "u ")):
            g.dirty += 1
            xy = line.split(" ", 2)[1]
            if xy[:1] not in (".", ""):
                g.staged += 1
        elif line.startswith("? "):
            g.dirty += 1
            g.untracked += 1
    return g


async def fetch(ctx):
    cwd = ctx.project_path
    if not cwd or not os.path.isdir(cwd):
        return GitInfo()
    try:
        out = await run_command(list(STATUS), cwd=cwd)
    except CommandError as e:
        if e.returncode == NOT_A_REPO:
            return GitInfo()
        raise
    return parse_status(out)


def project_key(ctx):
    return ctx.project_path or None


def source(settings):
    return DataSource(
        id="git", tier=3, category="git_status", owns="git",
        fetch=fetch, result_type=GitInfo, context_key=project_key,
        timeout=settings.source_timeout("git", 2.0),
        enabled=settings.source_enabled("git"),
    )
