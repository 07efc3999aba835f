"""Tiered gather: build one SessionHealth inside a fixed deadline.

Tier 1 runs inline and always merges. Tier 2 sources run concurrently, each
time-boxed; a failure leaves the previous section in place. Tier 3 sources go
through the shared cache: a fresh entry is used as is, a stale one triggers a
single-flight refresh in at most one process, and everyone else keeps using
the stale value. Refreshes still running at the deadline are not cancelled;
``drain`` lets them finish after the status line has been printed.
"""

import asyncio
import logging
import os
import time

from .freshness import FRESH
from .health import SessionHealth, SourceStatus
from .sources.base import GatherContext

log = logging.getLogger(__name__)

CACHED, STALE, TIMEOUT, ERROR = "cached", "stale", "timeout", "error"
UNAVAILABLE, ABANDONED, COOLDOWN, DISABLED = "unavailable", "abandoned", "cooldown", "disabled"


def project_path(payload):
    ws = payload.get("workspace")
    if isinstance(ws, dict):
        p = ws.get("project_dir") or ws.get("current_dir")
        if p:
            return str(p)
    return str(payload.get("cwd") or "")


class Orchestrator:
    def __init__(self, inv):
        self.inv = inv
        self.registry = inv.registry
        self.store = inv.store
        self.coordinator = inv.coordinator
        self.cooldowns = inv.cooldowns
        self._refreshing = set()

    def context(self, session_id, payload, previous=None):
        return GatherContext(
            session_id=session_id,
            payload=payload,
            settings=self.inv.settings,
            transcript_path=str(payload.get("transcript_path") or ""),
            project_path=project_path(payload),
            previous=previous,
            scanner=self.inv.scanner,
            deadline=time.monotonic() + self.inv.settings.deadline,
        )

    async def gather(self, session_id, payload):
        started = time.monotonic()
        previous = self.inv.health.load(session_id)
        ctx = self.context(session_id, payload, previous)
        health = previous or SessionHealth()
        health.session_id = session_id
        health.project_path = ctx.project_path

        values, statuses = {}, {}
        for src in self.registry:
            if not src.enabled:
                statuses[src.id] = SourceStatus(DISABLED)

        # ── Tier 1 ──
        for src in self.registry.by_tier(1):
            if not src.enabled:
                continue
            try:
                values[src.id] = src.fetch(ctx)
                statuses[src.id] = SourceStatus(FRESH, age=0.0)
            except Exception as e:
                log.warning("source %s failed: %s", src.id, e)
                statuses[src.id] = SourceStatus(ERROR, error=str(e))

        # ── Tiers 2 and 3 ──
        tasks = {}
        for src in self.registry.by_tier(2) + self.registry.by_tier(3):
            if src.enabled:
                run = self._tier2 if src.tier == 2 else self._tier3
                tasks[src.id] = asyncio.ensure_future(run(src, ctx))
        if tasks:
            await asyncio.wait(list(tasks.values()), timeout=ctx.remaining())

        unresolved = []
        for sid, task in tasks.items():
            src = self.registry.get(sid)
            if task.done() and not task.cancelled() and task.exception() is None:
                values[sid], statuses[sid] = task.result()
                continue
            if task.done() and not task.cancelled():
                log.warning("source %s crashed: %s", sid, task.exception())
            task.cancel()
            unresolved.append(task)
            values[sid], age = self._last_known(src, ctx)
            statuses[sid] = SourceStatus(TIMEOUT, age=age)
        if unresolved:
            await asyncio.gather(*unresolved, return_exceptions=True)

        # ── Merge, tier by tier; registration order within a tier ──
        for src in self.registry.by_tier(1) + self.registry.by_tier(2) + self.registry.by_tier(3):
            value = values.get(src.id)
            if value is None:
                continue
            try:
                src.apply(value, health)
            except Exception as e:
                log.warning("merge of %s failed: %s", src.id, e)
                statuses[src.id] = SourceStatus(ERROR, error=str(e))

        health.sources = statuses
        health.gathered_at = time.time()
        health.duration_ms = int((time.monotonic() - started) * 1000)
        self.inv.health.save(health)
        log.debug("gathered %s in %dms: %s", session_id, health.duration_ms,
                  {k: v.status for k, v in statuses.items()})
        return health

    async def drain(self, timeout):
        """Let refreshes abandoned at the deadline finish; cancel the rest."""
        pending = [t for t in self._refreshing if not t.done()]
        if not pending:
            return 0
        done, still = await asyncio.wait(pending, timeout=max(0.0, timeout))
        for t in still:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        log.debug("drained %d refreshes, cancelled %d", len(done), len(still))
        return len(done)

    # ═══════════════════════ TIER 2 ═══════════════════════

    async def _tier2(self, src, ctx):
        try:
            value = await asyncio.wait_for(src.fetch(ctx), min(src.timeout, ctx.remaining()))
        except asyncio.TimeoutError:
            log.info("source %s timed out", src.id)
            return None, SourceStatus(TIMEOUT)
        except Exception as e:
            log.warning("source %s failed: %s", src.id, e)
            return None, SourceStatus(ERROR, error=str(e))
        self.store.write(src.category, src.encode(value), session_id=ctx.session_id)
        return value, SourceStatus(FRESH, age=0.0)

    # ═══════════════════════ TIER 3 ═══════════════════════

    async def _tier3(self, src, ctx):
        key = src.key(ctx)
        entry = self.store.read(src.category, context_key=key)
        if entry is not None and entry.fresh:
            return self._decode(src, entry), SourceStatus(CACHED, age=entry.age)

        if self.cooldowns.active(src.category):
            return self._stale(src, entry, COOLDOWN)

        if not self.coordinator.try_acquire(src.category):
            # Another process is refreshing; use whatever we have.
            return self._stale(src, entry, STALE)

        # Someone may have finished a refresh between our read and the acquire.
        latest = self.store.read(src.category, context_key=key, use_mirror=False)
        if latest is not None and latest.fresh:
            self.coordinator.release(src.category)
            return self._decode(src, latest), SourceStatus(CACHED, age=latest.age)

        task = asyncio.ensure_future(self._refresh(src, ctx, key))
        self._refreshing.add(task)
        task.add_done_callback(self._refreshing.discard)

        await asyncio.wait([task], timeout=min(src.timeout, ctx.remaining()))
        if not task.done():
            log.info("refresh of %s still running at deadline", src.id)
            return self._stale(src, entry, ABANDONED)
        if task.cancelled() or task.exception() is not None:
            status = self._stale(src, entry, ERROR)
            if not task.cancelled():
                status[1].error = str(task.exception())
            return status
        return task.result(), SourceStatus(FRESH, age=0.0)

    async def _refresh(self, src, ctx, key):
        """Fetch, publish, record the outcome; always releases the lock."""
        try:
            value = await asyncio.wait_for(src.fetch(ctx), src.timeout)
            self.store.write(src.category, src.encode(value), context_key=key)
            self.cooldowns.record(src.category, True)
            log.debug("refreshed %s in pid %d", src.category, os.getpid())
            return value
        except Exception as e:
            self.cooldowns.record(src.category, False)
            log.warning("refresh of %s failed: %s", src.id, e)
            raise
        finally:
            self.coordinator.release(src.category)

    # ═══════════════════════ FALLBACKS ═══════════════════════

    def _decode(self, src, entry):
        try:
            return src.decode(entry.value)
        except Exception as e:
            log.info("cached %s unusable: %s", src.category, e)
            return None

    def _stale(self, src, entry, status):
        if entry is None:
            return None, SourceStatus(UNAVAILABLE if status == STALE else status)
        return self._decode(src, entry), SourceStatus(status, age=entry.age)

    def _last_known(self, src, ctx):
        if src.tier == 2:
            entry = self.store.read(src.category, session_id=ctx.session_id)
        else:
            entry = self.store.read(src.category, context_key=src.key(ctx))
        if entry is None:
            return None, None
        return self._decode(src, entry), entry.age
