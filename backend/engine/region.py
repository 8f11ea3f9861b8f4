from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Callable, Hashable, Mapping

from cache.region_cache import RegionCacheService
from config.settings import Settings, resolve_repo_path
from fetch.coordinator import FetchCoordinator
from fetch.debounce import DebouncedRequest
from fetch.results import Err, Ok, Outcome, StaleServed, map_outcome
from geo.aoi import BBox
from geo.distance import bbox_around, bbox_inscribed, haversine_m
from geo.region_key import chunk_bounds, region_for_bounds
from lod.clustering import ClusterOptions, PointOrCluster, cluster_points
from points.loaders import load_seed_records
from points.types import NearbyPoint, PointRecord, filter_to_bounds
from store.duckdb import DuckDBPointStore, ReadQuota
from store.in_memory import InMemoryPointStore
from store.types import PointStore

log = logging.getLogger(__name__)

MAX_VIEW_ZOOM = 24.0
MAX_NEAR_RADIUS_M = 50_000.0


class RegionEngine:
    """
    Caller-facing entry point: viewport in, points/clusters out.

    Read path: region key -> cache lookup -> coordinated store fetch -> clustering.
    Write path: store mutation, then invalidation of every cached region that
    could contain the affected point.
    """

    def __init__(
        self,
        store: PointStore,
        *,
        cache: RegionCacheService | None = None,
        coordinator: FetchCoordinator | None = None,
        cluster_options: ClusterOptions | None = None,
        key_steps: Mapping[float, float] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.store = store
        if cache is None:
            cache = RegionCacheService(clock=clock) if clock else RegionCacheService()
        self.cache = cache
        self.coordinator = coordinator or FetchCoordinator(cache)
        self.cluster_options = cluster_options or ClusterOptions()
        self.key_steps = dict(key_steps) if key_steps else None

    async def get_region(
        self, bounds: BBox, zoom: float, *, trace: dict[str, Any] | None = None
    ) -> Outcome[list[PointOrCluster]]:
        zoom = _check_zoom(zoom)
        req = _check_bounds(bounds)
        rk = region_for_bounds(req, zoom, self.key_steps)
        return await self._get_bounds(rk.key, rk.covered, req, zoom, trace)

    def request_region(
        self, bounds: BBox, zoom: float, channel: Hashable = "default"
    ) -> DebouncedRequest[Outcome[list[PointOrCluster]]]:
        """
        Debounced `get_region`: a newer call on the same channel within the
        debounce delay supersedes this one.
        """
        zoom = _check_zoom(zoom)
        req = _check_bounds(bounds)
        return self.coordinator.debounce(channel, lambda: self.get_region(req, zoom))

    async def get_chunk(
        self, key: str, zoom: float, *, trace: dict[str, Any] | None = None
    ) -> Outcome[list[PointOrCluster]]:
        zoom = _check_zoom(zoom)
        covered = chunk_bounds(key)
        return await self._get_bounds(key, covered, covered, zoom, trace)

    async def get_near(
        self, lat: float, lng: float, radius_m: float, *, trace: dict[str, Any] | None = None
    ) -> Outcome[list[NearbyPoint]]:
        if not (math.isfinite(lat) and math.isfinite(lng)) or not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValueError(f"Invalid coordinates: ({lat}, {lng})")
        if not (0 < radius_m <= MAX_NEAR_RADIUS_M):
            raise ValueError(f"radius must be in (0, {MAX_NEAR_RADIUS_M:g}] meters, got {radius_m}")

        def _nearby(records: list[PointRecord]) -> list[NearbyPoint]:
            out = []
            for r in records:
                d = haversine_m(lat, lng, r.lat, r.lng)
                if d <= radius_m:
                    out.append(NearbyPoint(record=r, distance_m=d))
            out.sort(key=lambda n: (n.distance_m, n.record.id))
            return out

        key = f"near:{lat:.4f}:{lng:.4f}:{int(round(radius_m))}"
        around = bbox_around(lat, lng, radius_m)
        cached = self.cache.fresh(key)
        if cached is None:
            cached = self.cache.lookup(around)
        if cached is not None:
            _trace(trace, source="cache")
            return Ok(_nearby(cached))

        # Every store hit lies in the circle, but only the inscribed square is
        # guaranteed complete. The entry covers the square and is invalidated
        # by changes anywhere in the circumscribed box.
        covered = bbox_inscribed(lat, lng, radius_m)

        async def _load() -> list[PointRecord]:
            return [n.record for n in await self.store.fetch_near(lat, lng, radius_m)]

        _trace(trace, source="joined" if self.coordinator.is_in_flight(key) else "store")
        outcome = await self.coordinator.fetch(key, covered, _load, extent=around)
        return map_outcome(self._stale_if_err(outcome, around, key), _nearby)

    async def insert(self, record: PointRecord) -> str:
        pid = await self.store.insert(record)
        self.invalidate(record.lat, record.lng)
        log.info("inserted point %s at (%.5f, %.5f)", pid, record.lat, record.lng)
        return pid

    async def delete(self, point_id: str) -> int:
        """
        Soft-delete a point. Returns the number of cache entries invalidated.
        """
        located = self.cache.locate(point_id)
        await self.store.delete(point_id)
        if located is not None:
            n = self.invalidate(*located)
        else:
            # Unknown position: any entry could hold it.
            n = self.invalidate_all()
        log.info("deleted point %s (%d cached region(s) invalidated)", point_id, n)
        return n

    def invalidate(self, lat: float, lng: float) -> int:
        n = self.cache.invalidate(lat, lng)
        self.coordinator.reset_rate_limits()
        return n

    def invalidate_all(self) -> int:
        n = self.cache.invalidate_all()
        self.coordinator.reset_rate_limits()
        return n

    def stats(self) -> dict[str, Any]:
        snap = self.cache.snapshot()
        snap["inFlight"] = self.coordinator.in_flight_count()
        snap["pendingRequests"] = self.coordinator.pending_debounced_count()
        snap["storeCalls"] = self.coordinator.store_calls
        return snap

    async def _get_bounds(
        self,
        key: str,
        covered: BBox,
        req: BBox,
        zoom: float,
        trace: dict[str, Any] | None,
    ) -> Outcome[list[PointOrCluster]]:
        cached = self.cache.lookup(req)
        if cached is not None:
            _trace(trace, source="cache", key=key)
            return Ok(cluster_points(cached, zoom, self.cluster_options))

        async def _load() -> list[PointRecord]:
            return await self.store.fetch_in_bounds(
                covered.min_lon, covered.min_lat, covered.max_lon, covered.max_lat
            )

        _trace(trace, source="joined" if self.coordinator.is_in_flight(key) else "store", key=key)
        outcome = await self.coordinator.fetch(key, covered, _load)
        return map_outcome(
            self._stale_if_err(outcome, req, key),
            lambda records: cluster_points(filter_to_bounds(records, req), zoom, self.cluster_options),
        )

    def _stale_if_err(
        self, outcome: Outcome[list[PointRecord]], req: BBox, key: str
    ) -> Outcome[list[PointRecord]]:
        # The key's box can be wider than any cached entry (coarser grid after
        # a zoom change), while the requested bounds still fit in one.
        if not isinstance(outcome, Err):
            return outcome
        stale = self.cache.stale_lookup(req)
        if stale is None:
            return outcome
        records, age_s = stale
        log.warning("serving stale data for %s (age %.0fs) after %s", key, age_s, outcome.kind.value)
        return StaleServed(records, age_s)


def seed_store_records(path: Path) -> list[PointRecord]:
    """
    Seed records from a JSON file; a missing file yields an empty list.
    """
    if not path.exists():
        log.warning("seed file %s not found; starting with an empty store", path)
        return []
    records = load_seed_records(path)
    log.info("loaded %d seed record(s) from %s", len(records), path)
    return records


def _check_zoom(zoom: float) -> float:
    z = float(zoom)
    if not math.isfinite(z) or z < 0 or z > MAX_VIEW_ZOOM:
        raise ValueError(f"zoom must be within [0, {MAX_VIEW_ZOOM:g}], got {zoom}")
    return z


def _check_bounds(bounds: BBox) -> BBox:
    vals = (bounds.min_lon, bounds.min_lat, bounds.max_lon, bounds.max_lat)
    if not all(math.isfinite(float(v)) for v in vals):
        raise ValueError(f"Invalid bounds: {bounds}")
    return bounds.clamped()


def _trace(trace: dict[str, Any] | None, **kv: Any) -> None:
    if trace is not None:
        trace.update(kv)


def build_engine(settings: Settings) -> RegionEngine:
    """
    Wire store, cache, coordinator and clustering from settings.
    """
    s = settings.store
    seed = seed_store_records(resolve_repo_path(s.seedPath)) if s.seedPath else []

    store: PointStore
    if s.backend == "duckdb":
        path = s.duckdbPath if s.duckdbPath == ":memory:" else str(resolve_repo_path(s.duckdbPath))
        quota = ReadQuota(s.readQuota, s.readQuotaWindowS) if s.readQuota else None
        duck = DuckDBPointStore(
            path=path, threads=s.duckdbThreads, timeout_s=settings.fetch.storeTimeoutS, quota=quota
        )
        if seed and duck.count() == 0:
            duck.seed(seed)
        store = duck
    else:
        store = InMemoryPointStore(seed)

    cache = RegionCacheService(settings.cache.to_config())
    coordinator = FetchCoordinator(
        cache,
        min_fetch_interval_s=settings.fetch.minFetchIntervalS,
        store_timeout_s=settings.fetch.storeTimeoutS,
        debounce_delay_s=settings.fetch.debounceDelayS,
    )
    log.info("region engine ready (store=%s, seed=%d)", s.backend, len(seed))
    return RegionEngine(
        store,
        cache=cache,
        coordinator=coordinator,
        cluster_options=settings.clustering.to_options(),
        key_steps=settings.regionKeys.stepsByMaxZoom,
    )
