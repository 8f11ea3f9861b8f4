from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable, Iterable, TypeVar

from cache.region_cache import RegionCacheService
from fetch.debounce import DEFAULT_DELAY_S, DebouncedRequest, Debouncer
from fetch.results import Err, ErrorKind, Ok, Outcome, StaleServed
from geo.aoi import BBox
from points.types import PointRecord, sanitize_records
from store.types import PointStoreError, QuotaExhaustedError

log = logging.getLogger(__name__)

T = TypeVar("T")

Loader = Callable[[], Awaitable[Iterable[Any]]]

MIN_FETCH_INTERVAL_S = 1.0
STORE_TIMEOUT_S = 10.0


class FetchCoordinator:
    """
    Issues point store fetches for cache misses.

    - at most one in-flight fetch per region key; concurrent callers share it
    - per-key minimum interval between store attempts
    - store failures fall back to stale cache entries before surfacing an Err

    A started fetch always runs to completion and populates the cache, even if
    every caller waiting on it went away.
    """

    def __init__(
        self,
        cache: RegionCacheService,
        *,
        min_fetch_interval_s: float = MIN_FETCH_INTERVAL_S,
        store_timeout_s: float = STORE_TIMEOUT_S,
        debounce_delay_s: float = DEFAULT_DELAY_S,
        clock: Callable[[], float] | None = None,
    ):
        self.cache = cache
        self.min_fetch_interval_s = max(0.0, float(min_fetch_interval_s))
        self.store_timeout_s = float(store_timeout_s)
        self._clock = clock or cache.now
        self._in_flight: dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._last_attempt: dict[str, float] = {}
        self._debouncer = Debouncer(debounce_delay_s)
        self.store_calls = 0

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def pending_debounced_count(self) -> int:
        return self._debouncer.pending_count()

    def reset_rate_limits(self) -> None:
        """
        Forget previous attempt times, e.g. after a mutation made cached data obsolete.
        """
        self._last_attempt.clear()

    async def fetch(
        self, key: str, covered: BBox, loader: Loader, *, extent: BBox | None = None
    ) -> Outcome[list[PointRecord]]:
        """
        Records for `covered`, from one shared store call per key.

        `extent` is passed to the cache when the loader may return records
        beyond `covered` (radius queries).
        """
        fut = self._in_flight.get(key)
        if fut is not None:
            log.debug("joining in-flight fetch for %s", key)
            return await asyncio.shield(fut)

        now = float(self._clock())
        last = self._last_attempt.get(key)
        if last is not None and now - last < self.min_fetch_interval_s:
            log.warning("rate limited fetch for %s (%.3fs since last attempt)", key, now - last)
            return self._fallback(key, covered, ErrorKind.rate_limited, "minimum fetch interval not elapsed")

        self._last_attempt[key] = now
        fut = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_mark_retrieved)
        self._in_flight[key] = fut
        task = asyncio.create_task(self._fetch_and_settle(key, covered, extent, loader, fut))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(fut)

    def debounce(
        self, channel: Hashable, factory: Callable[[], Awaitable[T]]
    ) -> DebouncedRequest[T]:
        return self._debouncer.submit(channel, factory)

    async def drain(self) -> None:
        """
        Wait for every started fetch to settle.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _fetch_and_settle(
        self,
        key: str,
        covered: BBox,
        extent: BBox | None,
        loader: Loader,
        fut: asyncio.Future,
    ) -> None:
        try:
            self.store_calls += 1
            try:
                raw = await asyncio.wait_for(loader(), timeout=self.store_timeout_s)
            except QuotaExhaustedError as e:
                log.warning("point store quota exhausted for %s: %s", key, e)
                outcome = self._fallback(key, covered, ErrorKind.quota_exhausted, str(e))
            except asyncio.TimeoutError:
                log.warning("point store timed out for %s after %.1fs", key, self.store_timeout_s)
                outcome = self._fallback(key, covered, ErrorKind.unavailable, "point store timed out")
            except PointStoreError as e:
                log.warning("point store failed for %s: %s", key, e)
                outcome = self._fallback(key, covered, ErrorKind.unavailable, str(e))
            else:
                records = sanitize_records(raw)
                entry = self.cache.store(key, records, covered, extent=extent)
                outcome = Ok(list(entry.records))
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            # Bugs reach every waiter unchanged.
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(outcome)
        finally:
            if self._in_flight.get(key) is fut:
                del self._in_flight[key]

    def _fallback(
        self, key: str, covered: BBox, kind: ErrorKind, message: str
    ) -> Outcome[list[PointRecord]]:
        stale = self.cache.stale(key) or self.cache.stale_lookup(covered)
        if stale is not None:
            records, age_s = stale
            log.warning("serving stale data for %s (age %.0fs) after %s", key, age_s, kind.value)
            return StaleServed(records, age_s)
        return Err(kind, message)


def _mark_retrieved(fut: asyncio.Future) -> None:
    # Waiters may all be gone by the time a fetch fails.
    if not fut.cancelled():
        fut.exception()
