from __future__ import annotations

import math
from functools import lru_cache

from pyproj import Transformer

from geo.aoi import BBox


MAX_MERCATOR_LAT = 85.05112878
MERCATOR_HALF_WORLD_M = 20037508.342789244
TILE_SIZE_PX = 256.0


def tile_zoom_for_view_zoom(view_zoom: float) -> int:
    """
    Choose a stable slippy-tile zoom for cache keys.

    Fractional view zooms round to the nearest tile zoom, clamped to [3, 16].
    """
    z = int(round(float(view_zoom)))
    return max(3, min(16, z))


@lru_cache(maxsize=1)
def transformer_4326_to_3857() -> Transformer:
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


@lru_cache(maxsize=1)
def transformer_3857_to_4326() -> Transformer:
    return Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


def _world_px(zoom: float) -> float:
    return TILE_SIZE_PX * (2.0 ** float(zoom))


def lonlat_to_pixel(lon: float, lat: float, zoom: float) -> tuple[float, float]:
    """
    Global Web Mercator pixel coordinates (256px tiles) of a lon/lat at `zoom`.

    Origin is the top-left corner of the world, y grows southwards.
    """
    lat = max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, float(lat)))
    x, y = transformer_4326_to_3857().transform(float(lon), lat)
    world_px = _world_px(zoom)
    px = (x + MERCATOR_HALF_WORLD_M) / (2.0 * MERCATOR_HALF_WORLD_M) * world_px
    py = (MERCATOR_HALF_WORLD_M - y) / (2.0 * MERCATOR_HALF_WORLD_M) * world_px
    return px, py


def pixel_to_lonlat(px: float, py: float, zoom: float) -> tuple[float, float]:
    world_px = _world_px(zoom)
    x = float(px) / world_px * (2.0 * MERCATOR_HALF_WORLD_M) - MERCATOR_HALF_WORLD_M
    y = MERCATOR_HALF_WORLD_M - float(py) / world_px * (2.0 * MERCATOR_HALF_WORLD_M)
    lon, lat = transformer_3857_to_4326().transform(x, y)
    return lon, lat


def lonlat_to_tile(zoom: int, lon: float, lat: float) -> tuple[int, int]:
    """
    Slippy tile (x, y) containing lon/lat at an integer zoom.
    """
    z = int(zoom)
    n = 2**z
    px, py = lonlat_to_pixel(lon, lat, z)
    x = int(math.floor(px / TILE_SIZE_PX))
    y = int(math.floor(py / TILE_SIZE_PX))
    return max(0, min(n - 1, x)), max(0, min(n - 1, y))


def tile_bbox_4326(zoom: int, x: int, y: int) -> BBox:
    """
    Slippy tile (z/x/y) bounds as a WGS84 lon/lat bbox.
    """
    z = int(zoom)
    west, north = pixel_to_lonlat(int(x) * TILE_SIZE_PX, int(y) * TILE_SIZE_PX, z)
    east, south = pixel_to_lonlat((int(x) + 1) * TILE_SIZE_PX, (int(y) + 1) * TILE_SIZE_PX, z)
    return BBox(min_lon=west, min_lat=south, max_lon=east, max_lat=north).normalized()
