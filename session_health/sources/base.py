"""Data source descriptors and the registry that validates them.

Tiers:
  1  instant, computed from stdin or a small local file; synchronous
  2  per-session (transcript derived); async, time-boxed
  3  global, shared across sessions through the cache store; async,
     single-flight refreshed
"""

import asyncio
import inspect
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from ..health import SECTIONS

T = TypeVar("T")

TIERS = (1, 2, 3)


@dataclass(frozen=True)
class DataSource(Generic[T]):
    id: str
    tier: int
    category: str
    owns: str
    fetch: Callable[..., Any]
    result_type: type
    timeout: float = 1.0
    merge: Optional[Callable[[T, Any], None]] = None
    context_key: Optional[Callable[..., Optional[str]]] = None
    enabled: bool = True

    def apply(self, value, health):
        """Merge ``value`` into the aggregate; only the owned section is touched."""
        if self.merge is not None:
            self.merge(value, health)
        else:
            setattr(health, self.owns, value)

    def encode(self, value):
        return asdict(value) if is_dataclass(value) else value

    def decode(self, data):
        return self.result_type.from_dict(data)

    def key(self, ctx):
        return self.context_key(ctx) if self.context_key else None


class Registry:
    def __init__(self, sources=()):
        self._sources = []
        for s in sources:
            self.register(s)

    def register(self, source):
        if source.tier not in TIERS:
            raise ValueError(f"source {source.id}: tier must be one of {TIERS}")
        if any(s.id == source.id for s in self._sources):
            raise ValueError(f"duplicate source id {source.id!r}")
        if source.owns not in SECTIONS:
            raise ValueError(f"source {source.id}: unknown section {source.owns!r}")
        clash = [s.id for s in self._sources if s.owns == source.owns]
        if clash:
            raise ValueError(f"source {source.id}: section {source.owns!r} already owned by {clash[0]}")
        if source.tier == 1 and inspect.iscoroutinefunction(source.fetch):
            raise ValueError(f"source {source.id}: tier 1 fetch must be synchronous")
        if source.tier > 1 and not inspect.iscoroutinefunction(source.fetch):
            raise ValueError(f"source {source.id}: tier {source.tier} fetch must be async")
        self._sources.append(source)
        return source

    def get(self, source_id):
        for s in self._sources:
            if s.id == source_id:
                return s
        return None

    def by_tier(self, tier):
        return [s for s in self._sources if s.tier == tier]

    def __iter__(self):
        return iter(self._sources)

    def __len__(self):
        return len(self._sources)


@dataclass
class GatherContext:
    """What a fetch may look at. Built once per gather."""

    session_id: str
    payload: dict
    settings: Any
    transcript_path: str = ""
    project_path: str = ""
    previous: Any = None
    scanner: Any = None
    deadline: float = 0.0  # time.monotonic() value
    _scan: Any = field(default=None, init=False, repr=False)

    def remaining(self):
        return max(0.0, self.deadline - time.monotonic())

    async def scan(self):
        """Transcript scan shared by every tier-2 source of this gather.

        Runs once, on the event loop; a caller timing out does not cancel
        it for the others.
        """
        if self._scan is None:
            self._scan = asyncio.ensure_future(self._run_scan())
        return await asyncio.shield(self._scan)

    async def _run_scan(self):
        return self.scanner.scan(self.session_id, self.transcript_path)
