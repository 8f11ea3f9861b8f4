from __future__ import annotations

import math

from geo.aoi import BBox

EARTH_RADIUS_M = 6_371_000.0

# Length of one degree of latitude (and of longitude at the equator) on the
# same sphere haversine_m uses.
METERS_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in meters between two WGS84 points.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2.0) ** 2
    # Clamp against float drift near antipodes.
    a = min(1.0, max(0.0, a))
    return 2.0 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_m(lat1, lon1, lat2, lon2) / 1000.0


def meters_to_lat_degrees(meters: float) -> float:
    return float(meters) / METERS_PER_DEGREE


def meters_to_lon_degrees(meters: float, *, at_lat: float) -> float:
    # Longitude degrees shrink with cos(lat); avoid blowing up at the poles.
    cos_lat = max(math.cos(math.radians(at_lat)), 1e-6)
    return float(meters) / (METERS_PER_DEGREE * cos_lat)


def lat_degrees_to_meters(degrees: float) -> float:
    return float(degrees) * METERS_PER_DEGREE


def lon_degrees_to_meters(degrees: float, *, at_lat: float) -> float:
    return float(degrees) * METERS_PER_DEGREE * math.cos(math.radians(at_lat))


def bbox_around(lat: float, lon: float, radius_m: float) -> BBox:
    """
    Smallest lon/lat box that contains the circle of `radius_m` around a point.
    """
    angular = float(radius_m) / EARTH_RADIUS_M
    dlat = math.degrees(angular)
    cos_lat = math.cos(math.radians(lat))
    ratio = math.sin(min(angular, math.pi / 2.0)) / cos_lat if cos_lat > 1e-12 else 2.0
    if ratio >= 1.0 or lat + dlat >= 90.0 or lat - dlat <= -90.0:
        # The circle reaches a pole: every longitude is in range.
        return BBox(min_lon=-180.0, min_lat=lat - dlat, max_lon=180.0, max_lat=lat + dlat).clamped()
    dlon = math.degrees(math.asin(ratio))
    return BBox(
        min_lon=lon - dlon, min_lat=lat - dlat, max_lon=lon + dlon, max_lat=lat + dlat
    ).clamped()


def bbox_inscribed(lat: float, lon: float, radius_m: float) -> BBox:
    """
    Largest axis-aligned box fully inside the circle of `radius_m` around a point.

    This is the area a radius query actually covers when its results are cached
    as a box.
    """
    # 1% margin for the lon-degree scale varying across the box.
    half = radius_m / math.sqrt(2.0) * 0.99
    dlat = meters_to_lat_degrees(half)
    dlon = meters_to_lon_degrees(half, at_lat=lat)
    return BBox(
        min_lon=lon - dlon, min_lat=lat - dlat, max_lon=lon + dlon, max_lat=lat + dlat
    ).clamped()
