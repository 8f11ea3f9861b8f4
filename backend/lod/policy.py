from __future__ import annotations

from typing import Any

DEFAULT_GRID_SIZE_PX = 100.0


def _as_float(v: Any) -> float | None:
    try:
        if v is None:
            return None
        return float(v)
    except Exception:
        return None


def choose_by_max_zoom(mapping: Any, zoom: float, *, default: float | None) -> float | None:
    """
    Choose a value from {maxZoom -> value} where maxZoom is an inclusive upper bound.

    Example:
      {6.0: 140, 8.0: 120, 10.0: 100}
    """
    if not isinstance(mapping, dict):
        return default
    items: list[tuple[float, float]] = []
    for k, v in mapping.items():
        kz = _as_float(k)
        fv = _as_float(v)
        if kz is None or fv is None or fv <= 0:
            continue
        items.append((float(kz), float(fv)))
    if not items:
        return default
    items.sort(key=lambda t: t[0])
    for max_zoom, value in items:
        if float(zoom) <= float(max_zoom):
            return value
    return items[-1][1]


def grid_size_px(zoom: float, grid_size_by_max_zoom: Any = None, *, default: float = DEFAULT_GRID_SIZE_PX) -> float:
    """
    Grid cell size (screen pixels) used for clustering at `zoom`.
    """
    chosen = choose_by_max_zoom(grid_size_by_max_zoom, zoom, default=default)
    return float(chosen if chosen is not None else default)


def should_cluster(zoom: float, *, max_zoom: float) -> bool:
    # Past max_zoom (street level) every toilet gets its own marker.
    return float(zoom) <= float(max_zoom)
