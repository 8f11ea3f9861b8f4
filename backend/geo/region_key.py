"""
Region keys: quantized identifiers for the geographic area a request covers.

Viewports are snapped outward onto a fixed degree grid, so nearby pans collapse
onto the same key while the fetched (covered) area never exceeds the request by
more than one grid step per side.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Mapping

from geo.aoi import BBox
from geo.tiles import lonlat_to_tile, tile_bbox_4326, tile_zoom_for_view_zoom

# {max view zoom (inclusive) -> grid step in degrees}
# 0.05 deg ~ 5.5 km, 0.02 deg ~ 2.2 km, 0.01 deg ~ 1.1 km
DEFAULT_KEY_STEPS: dict[float, float] = {10.0: 0.05, 13.0: 0.02, 24.0: 0.01}

CHUNK_SIZE_DEG = 0.05
MAX_VIEWPORT_CHUNKS = 9

# Tolerance for float noise when snapping already-aligned coordinates.
_EPS = 1e-9

_CHUNK_RE = re.compile(r"^chunk-(-?\d+(?:\.\d+)?)-(-?\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class RegionKey:
    key: str
    # Area that is actually fetched and cached for this key (>= the request).
    covered: BBox


def step_for_zoom(zoom: float, steps: Mapping[float, float] | None = None) -> float:
    """
    Choose a grid step from {maxZoom -> step} where maxZoom is an inclusive upper bound.
    """
    table = sorted((steps or DEFAULT_KEY_STEPS).items(), key=lambda t: float(t[0]))
    for max_zoom, step in table:
        if float(zoom) <= float(max_zoom):
            return float(step)
    return float(table[-1][1])


def _decimals(step: float) -> int:
    # Enough decimals to print any multiple of `step` exactly.
    return max(0, int(math.ceil(-math.log10(step) - _EPS)))


def _floor_to(v: float, step: float) -> float:
    return math.floor(v / step + _EPS) * step


def _ceil_to(v: float, step: float) -> float:
    return math.ceil(v / step - _EPS) * step


def snap_bounds(bounds: BBox, step: float) -> BBox:
    """
    Snap a bbox outward to the `step` grid. Aligned boxes come back unchanged.
    """
    b = bounds.normalized()
    d = _decimals(step)
    return BBox(
        min_lon=round(_floor_to(b.min_lon, step), d),
        min_lat=round(_floor_to(b.min_lat, step), d),
        max_lon=round(_ceil_to(b.max_lon, step), d),
        max_lat=round(_ceil_to(b.max_lat, step), d),
    ).clamped()


def encode_bounds(covered: BBox, step: float) -> str:
    d = _decimals(step)
    b = covered.normalized()
    return (
        f"bbox:{step:.{d}f}:{b.min_lon:.{d}f}:{b.min_lat:.{d}f}"
        f":{b.max_lon:.{d}f}:{b.max_lat:.{d}f}"
    )


def region_for_bounds(
    bounds: BBox, zoom: float, steps: Mapping[float, float] | None = None
) -> RegionKey:
    step = step_for_zoom(zoom, steps)
    covered = snap_bounds(bounds, step)
    return RegionKey(key=encode_bounds(covered, step), covered=covered)


def point_key(lat: float, lng: float, zoom: float) -> str:
    z = tile_zoom_for_view_zoom(zoom)
    x, y = lonlat_to_tile(z, lng, lat)
    return f"tile:{z}/{x}/{y}"


def region_for_point(lat: float, lng: float, zoom: float) -> RegionKey:
    """
    Key and coverage of the slippy tile containing a point at the given view zoom.
    """
    z = tile_zoom_for_view_zoom(zoom)
    x, y = lonlat_to_tile(z, lng, lat)
    return RegionKey(key=f"tile:{z}/{x}/{y}", covered=tile_bbox_4326(z, x, y))


def chunk_key(lat: float, lng: float) -> str:
    chunk_lat = _floor_to(lat, CHUNK_SIZE_DEG)
    chunk_lng = _floor_to(lng, CHUNK_SIZE_DEG)
    return f"chunk-{chunk_lat:.2f}-{chunk_lng:.2f}"


def chunk_bounds(key: str) -> BBox:
    m = _CHUNK_RE.match((key or "").strip())
    if m is None:
        raise ValueError(f"Invalid chunk key: {key!r}")
    lat = float(m.group(1))
    lng = float(m.group(2))
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise ValueError(f"Chunk key out of range: {key!r}")
    return BBox(
        min_lon=lng,
        min_lat=lat,
        max_lon=round(lng + CHUNK_SIZE_DEG, 2),
        max_lat=round(lat + CHUNK_SIZE_DEG, 2),
    ).clamped()


def chunks_for_bounds(bounds: BBox, *, max_chunks: int = MAX_VIEWPORT_CHUNKS) -> list[str]:
    """
    Chunk keys covering a viewport.

    When the viewport would need more than `max_chunks` chunks (zoomed far out),
    only the 3x3 block around the viewport center is returned.
    """
    b = bounds.normalized()
    lat_start = _floor_to(b.min_lat, CHUNK_SIZE_DEG)
    lng_start = _floor_to(b.min_lon, CHUNK_SIZE_DEG)
    n_lat = max(1, int(math.ceil((b.max_lat - lat_start) / CHUNK_SIZE_DEG - _EPS)))
    n_lng = max(1, int(math.ceil((b.max_lon - lng_start) / CHUNK_SIZE_DEG - _EPS)))

    if n_lat * n_lng > max_chunks:
        lon_c, lat_c = b.center
        c_lat = _floor_to(lat_c, CHUNK_SIZE_DEG)
        c_lng = _floor_to(lon_c, CHUNK_SIZE_DEG)
        return [
            chunk_key(c_lat + dy * CHUNK_SIZE_DEG + _EPS, c_lng + dx * CHUNK_SIZE_DEG + _EPS)
            for dy in (-1, 0, 1)
            for dx in (-1, 0, 1)
        ]

    out: list[str] = []
    for i in range(n_lat):
        for j in range(n_lng):
            out.append(
                chunk_key(
                    lat_start + i * CHUNK_SIZE_DEG + _EPS,
                    lng_start + j * CHUNK_SIZE_DEG + _EPS,
                )
            )
    return out
