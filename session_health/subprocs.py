"""Async subprocess runner for sources that shell out (git, ccusage, curl)."""

import asyncio
import logging
import os
import shutil

log = logging.getLogger(__name__)

GRACE = 2.0  # Between SIGTERM and SIGKILL

# Extend PATH for bun/node installed via common managers
EXTRA_PATHS = ("~/.bun/bin", "~/.local/bin", "~/.nvm/current/bin", "/usr/local/bin")


class CommandError(Exception):
    def __init__(self, argv, returncode, stderr=""):
        super().__init__(f"{argv[0]} exited {returncode}: {stderr.strip()[:200]}")
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


def extend_path(env=None):
    env = os.environ if env is None else env
    for p in EXTRA_PATHS:
        expanded = os.path.expanduser(p)
        if expanded not in env.get("PATH", "").split(os.pathsep):
            env["PATH"] = expanded + os.pathsep + env.get("PATH", "")
    return env


def which_any(*candidates):
    """First runnable command prefix, e.g. ``["bunx", "ccusage"]``."""
    for cand in candidates:
        if shutil.which(cand[0]):
            return list(cand)
    return None


async def run_command(argv, timeout=None, cwd=None, env=None, grace=GRACE):
    """Run ``argv`` and return stdout as text.

    Raises ``CommandError`` on a non-zero exit and ``asyncio.TimeoutError``
    past ``timeout``. On timeout or cancellation the child gets SIGTERM,
    then SIGKILL after ``grace`` seconds.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=env,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        await _terminate(proc, grace)
        raise
    if proc.returncode != 0:
        raise CommandError(argv, proc.returncode, err.decode("utf-8", "replace"))
    return out.decode("utf-8", "replace")


async def _terminate(proc, grace):
    if proc.returncode is not None:
        return
    log.debug("terminating pid %s", proc.pid)
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(asyncio.shield(proc.wait()), grace)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        log.info("pid %s ignored SIGTERM, killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
