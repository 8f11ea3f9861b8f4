import asyncio

import pytest

from cache.region_cache import CacheConfig, RegionCacheService
from config.settings import Settings, StoreSettings
from engine.region import RegionEngine, build_engine
from fakes import FakeClock, FakePointStore, rec
from fetch.coordinator import FetchCoordinator
from fetch.results import Err, ErrorKind, Ok, StaleServed
from geo.aoi import BBox
from lod.clustering import Cluster, PointMarker
from store.types import PointStoreError, QuotaExhaustedError

DAY = 24 * 3600.0

VIEW = BBox(min_lon=23.28, min_lat=42.64, max_lon=23.36, max_lat=42.72)
INNER = BBox(min_lon=23.31, min_lat=42.68, max_lon=23.33, max_lat=42.70)

INNER_IDS = ["center", "p2", "p3", "p4", "p5"]
RECORDS = [
    rec("center", 42.6977, 23.3219),
    rec("p2", 42.6900, 23.3200),
    rec("p3", 42.6950, 23.3250),
    rec("p4", 42.6955, 23.3288),
    rec("p5", 42.6850, 23.3150),
    rec("out_sw", 42.6600, 23.2900),
    rec("out_ne", 42.7100, 23.3500),
    rec("varna", 43.2049, 27.9105),
]


def _engine(records=RECORDS, **coord_kw):
    clock = FakeClock()
    cache = RegionCacheService(CacheConfig(), clock=clock)
    store = FakePointStore(records)
    coord = FetchCoordinator(cache, **coord_kw)
    return RegionEngine(store, cache=cache, coordinator=coord), store, clock


def _ids(items):
    return sorted(i.id for i in items)


def test_repeat_view_inside_fresh_window_skips_the_store():
    engine, store, clock = _engine()
    first = asyncio.run(engine.get_region(VIEW, 15))
    assert isinstance(first, Ok)
    assert _ids(first.value) == sorted(INNER_IDS + ["out_ne", "out_sw"])

    clock.advance(1799)
    trace: dict = {}
    again = asyncio.run(engine.get_region(VIEW, 15, trace=trace))
    assert isinstance(again, Ok)
    assert trace["source"] == "cache"
    assert store.fetch_calls == 1

    clock.advance(2)
    asyncio.run(engine.get_region(VIEW, 15))
    assert store.fetch_calls == 2


def test_contained_viewport_is_served_from_the_larger_entry():
    engine, store, _ = _engine()
    asyncio.run(engine.get_region(VIEW, 12))
    assert store.fetch_calls == 1

    out = asyncio.run(engine.get_region(INNER, 15))
    assert isinstance(out, Ok)
    assert _ids(out.value) == INNER_IDS
    assert all(isinstance(i, PointMarker) for i in out.value)
    assert store.fetch_calls == 1


def test_concurrent_identical_views_issue_one_store_call():
    engine, store, _ = _engine()

    async def run():
        store.gate = asyncio.Event()
        tasks = [asyncio.create_task(engine.get_region(VIEW, 15)) for _ in range(10)]
        await asyncio.sleep(0.01)
        store.gate.set()
        return await asyncio.gather(*tasks)

    outs = asyncio.run(run())
    assert store.fetch_calls == 1
    assert all(isinstance(o, Ok) for o in outs)
    assert all(o.value == outs[0].value for o in outs)


def test_requests_ten_ms_apart_share_the_pending_fetch():
    engine, store, _ = _engine()
    store.delay_s = 0.05

    async def run():
        a = asyncio.create_task(engine.get_region(VIEW, 15))
        await asyncio.sleep(0.01)
        trace: dict = {}
        b = asyncio.create_task(engine.get_region(VIEW, 15, trace=trace))
        return await a, await b, trace

    a, b, trace = asyncio.run(run())
    assert store.fetch_calls == 1
    assert trace["source"] == "joined"
    assert a.value == b.value


def test_quota_exhaustion_serves_two_day_old_entry():
    engine, store, clock = _engine()
    asyncio.run(engine.get_region(VIEW, 15))

    clock.advance(2 * DAY)
    store.fail_with = QuotaExhaustedError("daily read quota used up")
    out = asyncio.run(engine.get_region(VIEW, 15))
    assert isinstance(out, StaleServed)
    assert out.age_s == pytest.approx(2 * DAY)
    assert _ids(out.value) == sorted(INNER_IDS + ["out_ne", "out_sw"])


def test_failure_past_hard_ceiling_is_unavailable():
    engine, store, clock = _engine()
    asyncio.run(engine.get_region(VIEW, 15))

    clock.advance(8 * DAY)
    store.fail_with = PointStoreError("connection reset")
    out = asyncio.run(engine.get_region(VIEW, 15))
    assert isinstance(out, Err)
    assert out.kind is ErrorKind.unavailable


def test_outage_after_zoom_change_serves_the_older_finer_entry():
    engine, store, clock = _engine()
    asyncio.run(engine.get_region(VIEW, 12))

    clock.advance(2 * DAY)
    store.fail_with = QuotaExhaustedError("daily read quota used up")
    # Zoom 10 snaps to a coarser grid whose box reaches past VIEW.
    corner = BBox(min_lon=23.285, min_lat=42.655, max_lon=23.295, max_lat=42.665)
    out = asyncio.run(engine.get_region(corner, 10))
    assert isinstance(out, StaleServed)
    assert out.age_s == pytest.approx(2 * DAY)
    assert _ids(out.value) == ["out_sw"]
    assert store.fetch_calls == 2


def test_store_results_past_the_requested_box_are_not_cached():
    engine, store, _ = _engine()
    store.over_return_deg = 0.05
    out = asyncio.run(engine.get_region(INNER, 15))
    assert _ids(out.value) == INNER_IDS

    assert engine.cache.locate("out_sw") is None
    assert engine.invalidate(42.6600, 23.2900) == 0
    assert len(engine.cache) == 1


def test_insert_invalidates_regions_covering_the_new_point():
    engine, store, _ = _engine()
    asyncio.run(engine.get_region(VIEW, 15))

    pid = asyncio.run(engine.insert(rec("", 42.6920, 23.3230)))
    out = asyncio.run(engine.get_region(VIEW, 15))
    assert isinstance(out, Ok)
    assert pid in _ids(out.value)
    assert store.fetch_calls == 2


def test_delete_drops_the_point_from_later_reads():
    engine, store, _ = _engine()
    asyncio.run(engine.get_region(VIEW, 15))

    n = asyncio.run(engine.delete("p3"))
    assert n == 1
    out = asyncio.run(engine.get_region(VIEW, 15))
    assert "p3" not in _ids(out.value)
    assert store.fetch_calls == 2


def test_delete_of_uncached_point_clears_everything():
    engine, _, _ = _engine()
    asyncio.run(engine.get_region(INNER, 15))
    assert asyncio.run(engine.delete("varna")) == 1
    assert len(engine.cache) == 0


def test_far_out_view_clusters_the_city():
    engine, _, _ = _engine()
    out = asyncio.run(engine.get_region(VIEW, 8))
    assert isinstance(out, Ok)
    assert len(out.value) == 1
    assert isinstance(out.value[0], Cluster)
    assert out.value[0].count == 7


def test_empty_viewport_is_ok_and_empty():
    engine, _, _ = _engine()
    out = asyncio.run(engine.get_region(BBox(min_lon=25.0, min_lat=41.5, max_lon=25.1, max_lat=41.6), 14))
    assert out == Ok([])


def test_invalid_zoom_raises():
    engine, store, _ = _engine()
    with pytest.raises(ValueError):
        asyncio.run(engine.get_region(VIEW, 30))
    with pytest.raises(ValueError):
        asyncio.run(engine.get_region(VIEW, float("nan")))
    assert store.fetch_calls == 0


def test_get_near_sorts_by_distance_and_caches():
    engine, store, _ = _engine()
    out = asyncio.run(engine.get_near(42.6977, 23.3219, 1000.0))
    assert isinstance(out, Ok)
    assert [n.record.id for n in out.value] == ["center", "p3", "p4", "p2"]
    assert all(n.distance_m <= 1000.0 for n in out.value)

    trace: dict = {}
    again = asyncio.run(engine.get_near(42.6977, 23.3219, 1000.0, trace=trace))
    assert trace["source"] == "cache"
    assert again == out
    assert store.fetch_calls == 1


def test_get_near_uses_a_cached_region():
    engine, store, _ = _engine()
    asyncio.run(engine.get_region(VIEW, 12))
    out = asyncio.run(engine.get_near(42.6977, 23.3219, 500.0))
    assert [n.record.id for n in out.value] == ["center", "p3"]
    assert store.fetch_calls == 1


def test_delete_at_the_edge_of_a_near_query_refetches():
    # "edge" is 4.75 km due north: inside the circle, outside its inscribed square.
    engine, store, _ = _engine([rec("c", 42.6977, 23.3219), rec("edge", 42.7404, 23.3219)])
    first = asyncio.run(engine.get_near(42.6977, 23.3219, 5000.0))
    assert [n.record.id for n in first.value] == ["c", "edge"]

    assert asyncio.run(engine.delete("edge")) == 1
    again = asyncio.run(engine.get_near(42.6977, 23.3219, 5000.0))
    assert [n.record.id for n in again.value] == ["c"]
    assert store.fetch_calls == 2


def test_insert_at_the_edge_of_a_near_query_refetches():
    engine, store, _ = _engine([rec("c", 42.6977, 23.3219)])
    first = asyncio.run(engine.get_near(42.6977, 23.3219, 5000.0))
    assert [n.record.id for n in first.value] == ["c"]

    asyncio.run(engine.insert(rec("new", 42.7404, 23.3219)))
    again = asyncio.run(engine.get_near(42.6977, 23.3219, 5000.0))
    assert [n.record.id for n in again.value] == ["c", "new"]
    assert store.fetch_calls == 2


def test_get_near_rejects_bad_radius():
    engine, _, _ = _engine()
    with pytest.raises(ValueError):
        asyncio.run(engine.get_near(42.7, 23.3, 0))
    with pytest.raises(ValueError):
        asyncio.run(engine.get_near(42.7, 23.3, 60_000))


def test_get_chunk():
    engine, _, _ = _engine()
    out = asyncio.run(engine.get_chunk("chunk-42.65-23.30", 15))
    assert isinstance(out, Ok)
    assert _ids(out.value) == INNER_IDS
    with pytest.raises(ValueError):
        asyncio.run(engine.get_chunk("chunk-north-west", 15))


def test_request_region_keeps_only_the_latest_view():
    engine, store, _ = _engine(debounce_delay_s=0.01)

    async def run():
        first = engine.request_region(VIEW, 15, channel="map")
        second = engine.request_region(INNER, 15, channel="map")
        return await first.wait(), await second.wait()

    first, second = asyncio.run(run())
    assert first is None
    assert isinstance(second, Ok)
    assert _ids(second.value) == INNER_IDS
    assert store.fetch_calls == 1


def test_stats_reports_cache_and_fetch_counters():
    engine, _, _ = _engine()
    asyncio.run(engine.get_region(VIEW, 15))
    asyncio.run(engine.get_region(VIEW, 15))
    s = engine.stats()
    assert s["size"] == 1
    assert s["storeCalls"] == 1
    assert s["inFlight"] == 0
    assert s["pendingRequests"] == 0
    assert s["counters"]["hits"] == 1
    assert s["entries"][0]["records"] == 7


@pytest.mark.parametrize("backend", ["memory", "duckdb"])
def test_build_engine_serves_seeded_points(backend):
    settings = Settings(
        store=StoreSettings(backend=backend, duckdbPath=":memory:", seedPath="data/seed/toilets_sofia.json")
    )
    engine = build_engine(settings)
    out = asyncio.run(engine.get_region(VIEW, 15))
    assert isinstance(out, Ok)
    ids = _ids(out.value)
    assert len(ids) == 10
    assert all(i.startswith("seed_sofia_") for i in ids)
