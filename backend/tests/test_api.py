from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.deps import get_engine
from cache.region_cache import CacheConfig, RegionCacheService
from engine.region import RegionEngine
from fakes import FakeClock, FakePointStore, rec
from fetch.coordinator import FetchCoordinator
from main import app
from store.types import PointStoreError, QuotaExhaustedError

VIEW = {"north": 42.72, "south": 42.64, "east": 23.36, "west": 23.28}

RECORDS = [
    rec("center", 42.6977, 23.3219, title="Ploshtad Nezavisimost"),
    rec("p2", 42.6900, 23.3200),
    rec("p3", 42.6950, 23.3250),
    rec("p4", 42.6955, 23.3288),
    rec("p5", 42.6850, 23.3150),
    rec("out_sw", 42.6600, 23.2900),
    rec("out_ne", 42.7100, 23.3500),
]


@pytest.fixture
def api():
    clock = FakeClock()
    cache = RegionCacheService(CacheConfig(), clock=clock)
    store = FakePointStore(RECORDS)
    engine = RegionEngine(store, cache=cache, coordinator=FetchCoordinator(cache))
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app), engine, store, clock
    app.dependency_overrides.clear()


def _ids(body):
    return sorted(i["id"] for i in body["items"])


def test_healthz(api):
    client, *_ = api
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_region_returns_points_at_street_level(api):
    client, _, store, _ = api
    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert len(body["items"]) == 7
    first = body["items"][0]
    assert first["type"] == "point"
    assert first["id"] == "center"
    assert first["title"] == "Ploshtad Nezavisimost"
    assert store.fetch_calls == 1


def test_region_returns_clusters_when_zoomed_out(api):
    client, *_ = api
    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 8})
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert len(items) == 1
    assert items[0]["type"] == "cluster"
    assert items[0]["count"] == 7
    assert items[0]["superCluster"] is False
    assert sorted(items[0]["memberIds"]) == sorted(r.id for r in RECORDS)


def test_empty_region_is_ok_with_no_items(api):
    client, *_ = api
    resp = client.get(
        "/api/toilets/region",
        params={"north": 41.6, "south": 41.5, "east": 25.1, "west": 25.0, "zoom": 14},
    )
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "items": []}


def test_stale_data_is_served_and_flagged(api):
    client, _, store, clock = api
    client.get("/api/toilets/region", params={**VIEW, "zoom": 15})

    clock.advance(2 * 24 * 3600)
    store.fail_with = QuotaExhaustedError("quota")
    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "stale"
    assert body["ageS"] == 172800.0
    assert len(body["items"]) == 7


def test_quota_exhausted_without_cache_is_explicitly_unavailable(api):
    client, _, store, _ = api
    store.fail_with = QuotaExhaustedError("quota")
    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    assert resp.status_code == 503
    assert resp.json() == {"error": "currently unavailable", "kind": "quota_exhausted"}


def test_retry_inside_min_interval_is_rate_limited(api):
    client, _, store, _ = api
    store.fail_with = PointStoreError("boom")
    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    assert resp.status_code == 503
    assert resp.json()["kind"] == "unavailable"

    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    assert resp.status_code == 429
    assert resp.json() == {"error": "currently unavailable", "kind": "rate_limited"}
    assert store.fetch_calls == 1


def test_region_rejects_out_of_range_zoom(api):
    client, _, store, _ = api
    resp = client.get("/api/toilets/region", params={**VIEW, "zoom": 30})
    assert resp.status_code == 422
    assert store.fetch_calls == 0


def test_near_sorts_by_distance(api):
    client, *_ = api
    resp = client.get("/api/toilets/near", params={"lat": 42.6977, "lng": 23.3219, "radius_km": 1})
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert [i["id"] for i in items] == ["center", "p3", "p4", "p2"]
    assert items[0]["distanceM"] == 0.0
    assert all(i["distanceM"] <= 1000.0 for i in items)


def test_chunks_cover_the_viewport(api):
    client, *_ = api
    resp = client.get("/api/toilets/chunks", params={"north": 42.69, "south": 42.66, "east": 23.34, "west": 23.31})
    assert resp.status_code == 200
    assert resp.json()["chunks"] == ["chunk-42.65-23.30"]


def test_chunk_endpoint(api):
    client, *_ = api
    resp = client.get("/api/toilets/chunk/chunk-42.65-23.30", params={"zoom": 15})
    assert resp.status_code == 200
    assert _ids(resp.json()) == ["center", "p2", "p3", "p4", "p5"]

    resp = client.get("/api/toilets/chunk/not-a-chunk")
    assert resp.status_code == 422
    assert "Invalid chunk key" in resp.json()["detail"]


def test_create_toilet_shows_up_in_the_next_read(api):
    client, _, store, _ = api
    client.get("/api/toilets/region", params={**VIEW, "zoom": 15})

    resp = client.post("/api/toilets", json={"lat": 42.692, "lng": 23.323, "category": "cafe", "title": "  Corner cafe "})
    assert resp.status_code == 201
    pid = resp.json()["id"]
    assert store.records[pid].title == "Corner cafe"

    body = client.get("/api/toilets/region", params={**VIEW, "zoom": 15}).json()
    assert body["status"] == "ok"
    assert pid in _ids(body)


def test_create_toilet_validates_input(api):
    client, *_ = api
    assert client.post("/api/toilets", json={"lat": 95, "lng": 23.3}).status_code == 422
    assert client.post("/api/toilets", json={"lat": 42.7, "lng": 23.3, "category": "castle"}).status_code == 422


def test_delete_toilet_invalidates_its_region(api):
    client, *_ = api
    client.get("/api/toilets/region", params={**VIEW, "zoom": 15})

    resp = client.delete("/api/toilets/p3")
    assert resp.status_code == 200
    assert resp.json() == {"id": "p3", "invalidated": 1}

    body = client.get("/api/toilets/region", params={**VIEW, "zoom": 15}).json()
    assert "p3" not in _ids(body)


def test_manual_invalidation(api):
    client, engine, *_ = api
    client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    assert len(engine.cache) == 1

    resp = client.post("/api/cache/invalidate", json={"lat": 43.2, "lng": 27.9})
    assert resp.json() == {"invalidated": 0}
    resp = client.post("/api/cache/invalidate", json={})
    assert resp.json() == {"invalidated": 1}
    assert len(engine.cache) == 0


def test_debug_cache(api):
    client, *_ = api
    client.get("/api/toilets/region", params={**VIEW, "zoom": 15})
    body = client.get("/api/debug/cache").json()
    assert body["size"] == 1
    assert body["storeCalls"] == 1
    assert body["entries"][0]["fresh"] is True


def test_debug_telemetry_when_disabled(api):
    client, *_ = api
    assert client.get("/api/debug/telemetry").json() == {"enabled": False, "summary": []}
