from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from geo.aoi import BBox
from points.types import PointRecord, filter_to_bounds, sanitize_records

log = logging.getLogger(__name__)

FRESH_WINDOW_S = 30 * 60.0
HARD_CEILING_S = 7 * 24 * 3600.0
MAX_ENTRIES = 256


@dataclass
class CacheEntry:
    key: str
    records: list[PointRecord]
    fetched_at: float
    covered: BBox
    # Where the held records may lie; `covered` is where they are complete.
    extent: BBox

    def age_s(self, now: float) -> float:
        return max(0.0, now - self.fetched_at)


@dataclass(frozen=True)
class CacheConfig:
    max_entries: int = MAX_ENTRIES
    fresh_window_s: float = FRESH_WINDOW_S
    hard_ceiling_s: float = HARD_CEILING_S
    # Partial reassembly: every fresh entry that overlaps the request adds a
    # flat `coverage_per_entry`, regardless of the actual overlap area.
    coverage_threshold: float = 0.7
    coverage_per_entry: float = 0.3


@dataclass
class _Counters:
    hits: int = 0
    partial_hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    stores: int = 0
    evictions: int = 0
    invalidated: int = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


class RegionCacheService:
    """
    In-memory map of region key -> fetched records plus the area they cover.

    A lookup is a hit when a fresh entry's covered box contains the requested
    bounds. Failing that, enough overlapping fresh entries can be stitched
    together (partial reassembly). Entries older than `fresh_window_s` are only
    visible to `stale_lookup`, which is used when the store cannot be reached;
    entries older than `hard_ceiling_s` are purged.

    Not thread-safe. Only touch it from the event loop thread.
    """

    def __init__(self, config: CacheConfig | None = None, *, clock: Callable[[], float] = time.time):
        self.config = config or CacheConfig()
        self._clock = clock
        # Insertion order == fetch order (entries are re-inserted on replace).
        self._entries: dict[str, CacheEntry] = {}
        self._counters = _Counters()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def now(self) -> float:
        return float(self._clock())

    def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def fresh(self, key: str) -> list[PointRecord] | None:
        """
        Records of the entry stored under `key`, if it is still within the fresh window.
        """
        e = self._entries.get(key)
        if e is None or e.age_s(self.now()) > self.config.fresh_window_s:
            return None
        self._counters.hits += 1
        return list(e.records)

    def lookup(self, bounds: BBox) -> list[PointRecord] | None:
        found = self._lookup(bounds, max_age_s=self.config.fresh_window_s)
        if found is None:
            self._counters.misses += 1
            log.debug("region cache miss %s", bounds.rounded_key())
            return None
        records, _, partial = found
        if partial:
            self._counters.partial_hits += 1
        else:
            self._counters.hits += 1
        log.debug("region cache %s %s", "partial hit" if partial else "hit", bounds.rounded_key())
        return records

    def stale_lookup(self, bounds: BBox) -> tuple[list[PointRecord], float] | None:
        """
        Like `lookup`, but anything younger than the hard ceiling qualifies.

        Returns (records, age_s) where age_s is the age of the oldest entry used.
        """
        found = self._lookup(bounds, max_age_s=self.config.hard_ceiling_s)
        if found is None:
            return None
        records, age_s, _ = found
        self._counters.stale_hits += 1
        return records, age_s

    def stale(self, key: str) -> tuple[list[PointRecord], float] | None:
        """
        (records, age_s) of the entry stored under `key` if it is younger than the hard ceiling.
        """
        e = self._entries.get(key)
        if e is None:
            return None
        age_s = e.age_s(self.now())
        if age_s > self.config.hard_ceiling_s:
            return None
        self._counters.stale_hits += 1
        return list(e.records), age_s

    def store(
        self, key: str, records: Iterable[Any], covered: BBox, *, extent: BBox | None = None
    ) -> CacheEntry:
        """
        Cache `records` as the complete contents of `covered`.

        Records outside `extent` (default: `covered`) are dropped. `invalidate()`
        matches points against the extent, so an entry holding records beyond
        its covered box still goes away when one of them changes.
        """
        covered = covered.normalized()
        extent = covered if extent is None else extent.union(covered)
        entry = CacheEntry(
            key=key,
            records=filter_to_bounds(sanitize_records(records), extent),
            fetched_at=self.now(),
            covered=covered,
            extent=extent,
        )
        self._entries.pop(key, None)
        self._entries[key] = entry
        self._counters.stores += 1
        self._purge_expired()
        self._evict_overflow()
        return entry

    def invalidate(self, lat: float, lng: float) -> int:
        """
        Drop every entry whose extent contains the point. Returns the number dropped.
        """
        doomed = [k for k, e in self._entries.items() if e.extent.contains_point(lng, lat)]
        for k in doomed:
            del self._entries[k]
        self._counters.invalidated += len(doomed)
        if doomed:
            log.debug("invalidated %d region(s) around (%.5f, %.5f)", len(doomed), lat, lng)
        return len(doomed)

    def invalidate_all(self) -> int:
        n = len(self._entries)
        self._entries.clear()
        self._counters.invalidated += n
        log.debug("invalidated all %d region(s)", n)
        return n

    def locate(self, point_id: str) -> tuple[float, float] | None:
        """
        (lat, lng) of a cached record with this id, if any entry holds it.
        """
        for e in self._entries.values():
            for r in e.records:
                if r.id == point_id:
                    return r.lat, r.lng
        return None

    def snapshot(self) -> dict[str, Any]:
        now = self.now()
        return {
            "size": len(self._entries),
            "maxEntries": self.config.max_entries,
            "freshWindowS": self.config.fresh_window_s,
            "hardCeilingS": self.config.hard_ceiling_s,
            "counters": self._counters.as_dict(),
            "entries": [
                {
                    "key": e.key,
                    "ageS": round(e.age_s(now), 3),
                    "fresh": e.age_s(now) <= self.config.fresh_window_s,
                    "records": len(e.records),
                    "covered": e.covered.as_dict(),
                }
                for e in self._entries.values()
            ],
        }

    def _lookup(
        self, bounds: BBox, *, max_age_s: float
    ) -> tuple[list[PointRecord], float, bool] | None:
        b = bounds.normalized()
        now = self.now()
        usable = [e for e in self._entries.values() if e.age_s(now) <= max_age_s]

        containing = [e for e in usable if e.covered.contains(b)]
        if containing:
            best = max(containing, key=lambda e: e.fetched_at)
            return filter_to_bounds(best.records, b), best.age_s(now), False

        overlapping = [e for e in usable if e.covered.intersects(b)]
        coverage = self.config.coverage_per_entry * len(overlapping)
        if not overlapping or coverage < self.config.coverage_threshold:
            return None

        # Newest entries win on duplicate ids.
        merged: dict[str, PointRecord] = {}
        for e in sorted(overlapping, key=lambda e: e.fetched_at):
            for r in filter_to_bounds(e.records, e.covered):
                merged[r.id] = r
        records = filter_to_bounds([merged[k] for k in sorted(merged)], b)
        oldest_age = max(e.age_s(now) for e in overlapping)
        return records, oldest_age, True

    def _purge_expired(self) -> None:
        now = self.now()
        expired = [k for k, e in self._entries.items() if e.age_s(now) > self.config.hard_ceiling_s]
        for k in expired:
            del self._entries[k]
        if expired:
            self._counters.evictions += len(expired)
            log.debug("purged %d expired region(s)", len(expired))

    def _evict_overflow(self) -> None:
        max_items = max(1, int(self.config.max_entries))
        while len(self._entries) > max_items:
            oldest = next(iter(self._entries))
            self._entries.pop(oldest, None)
            self._counters.evictions += 1
            log.debug("evicted region %s", oldest)
