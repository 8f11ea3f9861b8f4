from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable

from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from geo.distance import bbox_around, haversine_m
from points.types import NearbyPoint, PointRecord, is_servable
from store.types import PointStore, new_point_id


class InMemoryPointStore(PointStore):
    """
    Keeps records in memory and answers bbox queries through a shapely STRtree.

    The tree is rebuilt lazily after mutations; this store is meant for
    development and tests, not write-heavy use.
    """

    def __init__(self, records: Iterable[PointRecord] | None = None):
        self._records: dict[str, PointRecord] = {}
        for r in records or []:
            self._records[r.id] = r
        self._tree: STRtree | None = None
        self._tree_ids: list[str] = []

    def __len__(self) -> int:
        return len(self._records)

    def get(self, point_id: str) -> PointRecord | None:
        return self._records.get(point_id)

    async def fetch_in_bounds(
        self, west: float, south: float, east: float, north: float
    ) -> list[PointRecord]:
        tree = self._ensure_tree()
        if not self._tree_ids:
            return []
        idxs = _to_int_list(tree.query(shapely_box(west, south, east, north)))
        out = [self._records[self._tree_ids[i]] for i in idxs]
        out = [r for r in out if is_servable(r)]
        out.sort(key=lambda r: r.id)
        return out

    async def fetch_near(self, lat: float, lng: float, radius_m: float) -> list[NearbyPoint]:
        b = bbox_around(lat, lng, radius_m)
        candidates = await self.fetch_in_bounds(b.min_lon, b.min_lat, b.max_lon, b.max_lat)
        out: list[NearbyPoint] = []
        for r in candidates:
            d = haversine_m(lat, lng, r.lat, r.lng)
            if d <= radius_m:
                out.append(NearbyPoint(record=r, distance_m=d))
        out.sort(key=lambda n: (n.distance_m, n.record.id))
        return out

    async def insert(self, record: PointRecord) -> str:
        pid = record.id or new_point_id()
        now = datetime.now(timezone.utc)
        self._records[pid] = replace(
            record, id=pid, created_at=record.created_at or now, updated_at=now
        )
        self._tree = None
        return pid

    async def delete(self, point_id: str) -> None:
        existing = self._records.get(point_id)
        if existing is None:
            return
        # Soft delete, like the production store.
        self._records[point_id] = replace(
            existing, removed=True, updated_at=datetime.now(timezone.utc)
        )
        self._tree = None

    def _ensure_tree(self) -> STRtree:
        if self._tree is None:
            ids = sorted(self._records.keys())
            geoms = [Point(self._records[i].lng, self._records[i].lat) for i in ids]
            self._tree_ids = ids
            self._tree = STRtree(geoms)
        return self._tree


def _to_int_list(idxs: Any) -> list[int]:
    # Shapely STRtree returns numpy.ndarray of indices.
    if idxs is None:
        return []
    return [int(i) for i in idxs]
