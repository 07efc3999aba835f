"""Active model (tier 1): stdin payload, then settings.json, then "Claude"."""

import logging
import re

from ..fsutil import rjson
from ..health import ModelInfo
from .base import DataSource

log = logging.getLogger(__name__)

FAMILIES = ("opus", "sonnet", "haiku")
_VERSION = re.compile(r"(?:opus|sonnet|haiku)-(\d+)(?:-(\d))?(?!\d)")


def model_family(mid):
    """Detect model family from model ID."""
    mid_l = (mid or "").lower()
    for k in FAMILIES:
        if k in mid_l:
            return k
    return ""


def label_for(mid):
    """``claude-opus-4-6`` -> ``Opus 4.6``; unknown ids pass through."""
    fam = model_family(mid)
    if not fam:
        return mid or "Claude"
    m = _VERSION.search(mid.lower())
    if not m:
        return fam.capitalize()
    ver = m.group(1) + (f".{m.group(2)}" if m.group(2) else "")
    return f"{fam.capitalize()} {ver}"


def settings_model(path):
    data = rjson(path)
    if isinstance(data, dict) and isinstance(data.get("model"), str):
        return data["model"] or None
    return None


def resolve(payload, settings_path):
    m = payload.get("model")
    if isinstance(m, str):
        m = {"id": m}
    if isinstance(m, dict):
        mid = m.get("id") or m.get("model_id") or ""
        name = m.get("display_name") or ""
        if mid or name:
            return ModelInfo(id=mid, display_name=name or label_for(mid),
                             family=model_family(mid or name),
                             label=label_for(mid) if mid else name, source="input")
    sm = settings_model(settings_path)
    if sm:
        return ModelInfo(id=sm, display_name=label_for(sm), family=model_family(sm),
                         label=label_for(sm), source="settings")
    return ModelInfo()


def fetch(ctx):
    return resolve(ctx.payload, ctx.settings.settings_path)


def source(settings):
    return DataSource(
        id="model", tier=1, category="model", owns="model",
        fetch=fetch, result_type=ModelInfo,
        timeout=settings.source_timeout("model", 0.5),
        enabled=settings.source_enabled("model"),
    )
