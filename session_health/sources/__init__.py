from . import billing, context, git, model, quota, quota_override, secrets, session_cost, transcript
from .base import DataSource, GatherContext, Registry

# Merge order: tier 1 first, then per-session, then global
MODULES = (context, model, session_cost, quota_override, transcript, secrets, git, billing, quota)


def default_registry(settings):
    return Registry(m.source(settings) for m in MODULES)


__all__ = ["DataSource", "GatherContext", "Registry", "default_registry", "MODULES"]
