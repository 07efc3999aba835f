"""Per-invocation context: every cache, store and coordinator one run uses.

Built once from ``Settings`` and passed down explicitly. Nothing in the
package keeps module-level registries or mirrors, so tests can build as many
independent invocations as they like.
"""

import time

from .cache_store import TieredCacheStore
from .freshness import Cooldowns, build_categories
from .health import HealthStore
from .maintenance import maybe_run
from .orchestrator import Orchestrator
from .result_cache import ResultCache
from .scanner import IncrementalLogScanner
from .single_flight import SingleFlightCoordinator
from .sources import default_registry
from .state import StateManager


class Invocation:
    def __init__(self, settings, registry=None, extractors=None, clock=time.time):
        self.settings = settings
        self.categories = build_categories(settings.categories)
        self.results = ResultCache(settings.result_ttl, settings.result_max_entries,
                                   settings.result_max_bytes)
        # Old per-feature scanner state lived next to the cooldown files
        self.state = StateManager(settings.scanners_dir, legacy_dir=settings.cooldowns_dir)
        self.scanner = IncrementalLogScanner(self.state, self.results, settings, extractors)
        self.store = TieredCacheStore(settings, self.categories, clock=clock)
        self.coordinator = SingleFlightCoordinator(settings.locks_dir, settings.max_lock_age)
        self.cooldowns = Cooldowns(settings.cooldowns_dir, self.categories, clock=clock)
        self.health = HealthStore(settings.sessions_dir)
        self.registry = default_registry(settings) if registry is None else registry
        self.orchestrator = Orchestrator(self)

    async def gather(self, session_id, payload):
        return await self.orchestrator.gather(session_id, payload)

    async def finish(self, session_id):
        """After output: let abandoned refreshes land, then housekeeping."""
        await self.orchestrator.drain(self.settings.linger)
        self.coordinator.release_all()
        maybe_run(self.settings, current_session=session_id)
