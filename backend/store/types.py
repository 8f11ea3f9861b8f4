from __future__ import annotations

import time
import uuid
from typing import Protocol

from points.types import NearbyPoint, PointRecord


def new_point_id() -> str:
    return f"toilet_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class PointStoreError(Exception):
    """
    Generic I/O failure talking to the point store.
    """


class PointStoreTimeout(PointStoreError):
    pass


class QuotaExhaustedError(PointStoreError):
    """
    The store throttled us (read quota / rate exhausted).

    Callers should serve stale cached data instead of surfacing this whenever any
    cache exists.
    """


class PointStore(Protocol):
    """
    Point store interface.

    `fetch_in_bounds` may over-return slightly beyond the bounds; callers filter.
    """

    async def fetch_in_bounds(
        self, west: float, south: float, east: float, north: float
    ) -> list[PointRecord]: ...

    async def fetch_near(self, lat: float, lng: float, radius_m: float) -> list[NearbyPoint]: ...

    async def insert(self, record: PointRecord) -> str: ...

    async def delete(self, point_id: str) -> None: ...
