from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BBox:
    """
    WGS84 bounding box in lon/lat degrees.

    Convention used throughout this repo:
    - minLon, minLat, maxLon, maxLat (west, south, east, north)

    Edges are inclusive: a point on the boundary is inside, and a box equal to
    another box is contained by it.
    """

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @classmethod
    def from_nsew(cls, *, north: float, south: float, east: float, west: float) -> "BBox":
        return cls(min_lon=west, min_lat=south, max_lon=east, max_lat=north).normalized()

    def normalized(self) -> "BBox":
        min_lon = min(self.min_lon, self.max_lon)
        max_lon = max(self.min_lon, self.max_lon)
        min_lat = min(self.min_lat, self.max_lat)
        max_lat = max(self.min_lat, self.max_lat)
        return BBox(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)

    def clamped(self) -> "BBox":
        """
        Clamp to the valid WGS84 range (lat [-90, 90], lon [-180, 180]).
        """
        b = self.normalized()
        return BBox(
            min_lon=max(-180.0, b.min_lon),
            min_lat=max(-90.0, b.min_lat),
            max_lon=min(180.0, b.max_lon),
            max_lat=min(90.0, b.max_lat),
        )

    def rounded_key(self, decimals: int = 4) -> tuple[float, float, float, float]:
        """
        A stable, hashable key for caching bbox-derived computations.

        decimals=4 is ~11m-ish in latitude.
        """
        b = self.normalized()
        return (
            round(b.min_lon, decimals),
            round(b.min_lat, decimals),
            round(b.max_lon, decimals),
            round(b.max_lat, decimals),
        )

    def contains(self, other: "BBox") -> bool:
        a = self.normalized()
        b = other.normalized()
        return (
            a.min_lon <= b.min_lon
            and a.min_lat <= b.min_lat
            and a.max_lon >= b.max_lon
            and a.max_lat >= b.max_lat
        )

    def contains_point(self, lon: float, lat: float) -> bool:
        b = self.normalized()
        return b.min_lon <= lon <= b.max_lon and b.min_lat <= lat <= b.max_lat

    def intersects(self, other: "BBox") -> bool:
        a = self.normalized()
        b = other.normalized()
        return not (
            a.max_lon < b.min_lon
            or b.max_lon < a.min_lon
            or a.max_lat < b.min_lat
            or b.max_lat < a.min_lat
        )

    def union(self, other: "BBox") -> "BBox":
        """Smallest box containing both."""
        a = self.normalized()
        b = other.normalized()
        return BBox(
            min_lon=min(a.min_lon, b.min_lon),
            min_lat=min(a.min_lat, b.min_lat),
            max_lon=max(a.max_lon, b.max_lon),
            max_lat=max(a.max_lat, b.max_lat),
        )

    @property
    def center(self) -> tuple[float, float]:
        """(lon, lat) of the box center."""
        b = self.normalized()
        return (b.min_lon + b.max_lon) / 2.0, (b.min_lat + b.max_lat) / 2.0

    def as_dict(self) -> dict[str, float]:
        b = self.normalized()
        return {
            "minLon": b.min_lon,
            "minLat": b.min_lat,
            "maxLon": b.max_lon,
            "maxLat": b.max_lat,
        }
