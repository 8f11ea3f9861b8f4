from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from config.settings import get_settings
from engine.region import RegionEngine, build_engine
from telemetry.singleton import get_store

log = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> RegionEngine:
    return build_engine(get_settings())


def clear_engine_cache() -> None:
    try:
        get_engine.cache_clear()
    except Exception:
        pass


def record_event(
    *,
    endpoint: str,
    outcome: str,
    view_zoom: float | None,
    bbox: dict[str, float] | None,
    stats: dict[str, Any],
) -> None:
    # Persist telemetry for later analysis (best-effort).
    try:
        store = get_store()
        if store is not None:
            store.record(
                endpoint=endpoint,
                outcome=outcome,
                store=get_settings().store.backend,
                view_zoom=view_zoom,
                bbox=bbox,
                stats=stats,
            )
    except Exception as e:
        log.debug("telemetry record failed: %s", e)
