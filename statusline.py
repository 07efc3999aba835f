#!/usr/bin/env python3
"""Claude Code Statusline — session health data layer.

Reads the host's JSON payload on stdin and prints one JSON document: the
session's aggregate health (context window, model, session cost, transcript,
alerts, git, billing block, quota). Formatting is left to the caller.

Many panes run this at once, every few seconds. Slow data (ccusage, the usage
endpoint, git) is shared through ~/.claude/session-health/ and refreshed by
one process at a time; the transcript is scanned incrementally.

The gather runs in a forked worker. The parent prints whatever the worker
hands back within the deadline and exits, so the host never waits on a slow
refresh; the worker lingers in its own session to finish it.

Dependencies: ccusage (bun install -g ccusage), git, curl
Config:       ~/.claude/statusline.toml (optional)
State:        ~/.claude/session-health/
"""

import sys, json, os, asyncio, logging, select, signal, time

from session_health.config import load_config
from session_health.health import HealthStore
from session_health.logs import setup_logging
from session_health.runtime import Invocation
from session_health.subprocs import extend_path

log = logging.getLogger("session_health.statusline")

HANDOFF_GRACE = 0.5   # Parent waits this long past the deadline for the worker
ALARM_MARGIN = 15     # Worker hard-stops this long after deadline + linger

# ═══════════════════════ IO ═══════════════════════

def read_payload(stream):
    """Host payload, or None when stdin is not a JSON object."""
    try:
        data = json.load(stream)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None

def session_id_of(data):
    return str(data.get("session_id") or "unknown")

def render(health):
    return json.dumps(health.to_dict(), separators=(",", ":")) + "\n"

def fallback_output(settings, session_id):
    """Last saved aggregate, for when the worker missed the handoff."""
    h = HealthStore(settings.sessions_dir).load(session_id)
    return render(h) if h else ""

def write_all(fd, data):
    while data:
        n = os.write(fd, data)
        data = data[n:]

def read_until_eof(fd, timeout):
    """Read a pipe until EOF or ``timeout`` seconds; returns what arrived."""
    chunks = []
    end = time.monotonic() + timeout
    while True:
        left = end - time.monotonic()
        if left <= 0:
            break
        ready, _, _ = select.select([fd], [], [], left)
        if not ready:
            break
        chunk = os.read(fd, 65536)
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks).decode("utf-8", "replace")

def to_devnull():
    """Drop the host's stdio so it sees EOF when the parent exits."""
    fd = os.open(os.devnull, os.O_RDWR)
    for target in (0, 1, 2):
        os.dup2(fd, target)
    if fd > 2:
        os.close(fd)

# ═══════════════════════ RUN ═══════════════════════

async def run(settings, session_id, data, emit):
    """Gather, hand the result to ``emit``, then drain and tidy up."""
    inv = Invocation(settings)
    try:
        health = await inv.gather(session_id, data)
        emit(render(health))
    finally:
        await inv.finish(session_id)

def run_inline(settings, session_id, data):
    out = []

    def emit(text):
        out.append(text)
        sys.stdout.write(text)
        sys.stdout.flush()

    asyncio.run(run(settings, session_id, data, emit))
    return "".join(out)

def run_detached(settings, session_id, data):
    """Fork a worker; print its handoff (or the last aggregate) and return."""
    r, w = os.pipe()
    pid = os.fork()
    if pid == 0:
        # Child: own session, no host stdio, hard timeout
        os.close(r)
        code = 0
        try:
            os.setsid()
            to_devnull()
            signal.alarm(int(settings.deadline + settings.linger) + ALARM_MARGIN)

            def emit(text):
                try:
                    write_all(w, text.encode("utf-8"))
                finally:
                    os.close(w)

            asyncio.run(run(settings, session_id, data, emit))
        except Exception:
            log.exception("worker for %s failed", session_id)
            code = 1
        finally:
            os._exit(code)

    os.close(w)
    try:
        text = read_until_eof(r, settings.deadline + HANDOFF_GRACE)
    finally:
        os.close(r)
    if not text.endswith("\n"):
        log.info("worker missed the handoff for %s", session_id)
        text = fallback_output(settings, session_id)
    sys.stdout.write(text)
    sys.stdout.flush()
    return text

# ═══════════════════════ MAIN ═══════════════════════

def main():
    extend_path()
    settings = load_config()
    setup_logging(settings)

    data = read_payload(sys.stdin)
    if data is None:
        return

    session_id = session_id_of(data)
    if settings.detach and hasattr(os, "fork"):
        run_detached(settings, session_id, data)
    else:
        run_inline(settings, session_id, data)

if __name__ == "__main__":
    main()
