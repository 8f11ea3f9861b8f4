import time

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.deps import get_engine, record_event
from api.models import ApiInvalidate, ApiNewToilet
from api.serialize import (
    error_body,
    item_to_dict,
    nearby_to_dict,
    outcome_response,
    outcome_status,
)
from config.settings import get_settings
from engine.region import RegionEngine
from fetch.results import ErrorKind, Ok, StaleServed
from geo.aoi import BBox
from geo.region_key import chunks_for_bounds
from store.types import PointStoreError, QuotaExhaustedError
from telemetry.log import setup_logging
from telemetry.singleton import get_store

setup_logging(get_settings().logLevel)

app = FastAPI(title="toiletmap")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValueError)
async def _invalid_input(_request: Request, exc: ValueError):
    return JSONResponse({"detail": str(exc)}, status_code=422)


@app.exception_handler(PointStoreError)
async def _store_failure(_request: Request, exc: PointStoreError):
    kind = ErrorKind.quota_exhausted if isinstance(exc, QuotaExhaustedError) else ErrorKind.unavailable
    return JSONResponse(error_body(kind), status_code=503)


def _stats(outcome, trace: dict, started: float) -> dict:
    stats = {
        "source": trace.get("source"),
        "timingsMs": {"total": round((time.perf_counter() - started) * 1000.0, 3)},
    }
    if isinstance(outcome, (Ok, StaleServed)):
        stats["items"] = len(outcome.value)
    return stats


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/api/toilets/region")
async def get_region(
    north: float = Query(..., ge=-90.0, le=90.0),
    south: float = Query(..., ge=-90.0, le=90.0),
    east: float = Query(..., ge=-180.0, le=180.0),
    west: float = Query(..., ge=-180.0, le=180.0),
    zoom: float = Query(..., ge=0.0, le=24.0),
    engine: RegionEngine = Depends(get_engine),
):
    started = time.perf_counter()
    bounds = BBox.from_nsew(north=north, south=south, east=east, west=west)
    trace: dict = {}
    outcome = await engine.get_region(bounds, zoom, trace=trace)
    record_event(
        endpoint="/api/toilets/region",
        outcome=outcome_status(outcome),
        view_zoom=zoom,
        bbox=bounds.as_dict(),
        stats=_stats(outcome, trace, started),
    )
    return outcome_response(outcome, item_to_dict)


@app.get("/api/toilets/near")
async def get_near(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lng: float = Query(..., ge=-180.0, le=180.0),
    radius_km: float = Query(5.0, gt=0.0, le=50.0),
    engine: RegionEngine = Depends(get_engine),
):
    started = time.perf_counter()
    trace: dict = {}
    outcome = await engine.get_near(lat, lng, radius_km * 1000.0, trace=trace)
    record_event(
        endpoint="/api/toilets/near",
        outcome=outcome_status(outcome),
        view_zoom=None,
        bbox=None,
        stats={**_stats(outcome, trace, started), "radiusKm": radius_km},
    )
    return outcome_response(outcome, nearby_to_dict)


@app.get("/api/toilets/chunks")
def list_chunks(
    north: float = Query(..., ge=-90.0, le=90.0),
    south: float = Query(..., ge=-90.0, le=90.0),
    east: float = Query(..., ge=-180.0, le=180.0),
    west: float = Query(..., ge=-180.0, le=180.0),
):
    bounds = BBox.from_nsew(north=north, south=south, east=east, west=west)
    return {"chunks": chunks_for_bounds(bounds)}


@app.get("/api/toilets/chunk/{chunk_key}")
async def get_chunk(
    chunk_key: str,
    zoom: float = Query(12.0, ge=0.0, le=24.0),
    engine: RegionEngine = Depends(get_engine),
):
    started = time.perf_counter()
    trace: dict = {}
    outcome = await engine.get_chunk(chunk_key, zoom, trace=trace)
    record_event(
        endpoint="/api/toilets/chunk",
        outcome=outcome_status(outcome),
        view_zoom=zoom,
        bbox=None,
        stats={**_stats(outcome, trace, started), "chunk": chunk_key},
    )
    return outcome_response(outcome, item_to_dict)


@app.post("/api/toilets", status_code=201)
async def create_toilet(body: ApiNewToilet, engine: RegionEngine = Depends(get_engine)):
    pid = await engine.insert(body.to_record())
    return {"id": pid}


@app.delete("/api/toilets/{point_id}")
async def delete_toilet(point_id: str, engine: RegionEngine = Depends(get_engine)):
    n = await engine.delete(point_id)
    return {"id": point_id, "invalidated": n}


@app.post("/api/cache/invalidate")
def invalidate_cache(body: ApiInvalidate | None = None, engine: RegionEngine = Depends(get_engine)):
    if body is not None and body.lat is not None and body.lng is not None:
        return {"invalidated": engine.invalidate(body.lat, body.lng)}
    return {"invalidated": engine.invalidate_all()}


@app.get("/api/debug/cache")
def debug_cache(engine: RegionEngine = Depends(get_engine)):
    return engine.stats()


@app.get("/api/debug/telemetry")
def debug_telemetry(endpoint: str | None = None):
    store = get_store()
    if store is None:
        return {"enabled": False, "summary": []}
    store.flush(timeout_s=1.0)
    return {"enabled": True, "summary": store.summary(endpoint=endpoint)}
