from __future__ import annotations

from typing import Any, Callable, TypeVar

from fastapi.responses import JSONResponse

from fetch.results import Err, ErrorKind, Ok, Outcome, StaleServed
from lod.clustering import Cluster, PointMarker, PointOrCluster
from points.types import NearbyPoint, record_to_dict

T = TypeVar("T")

UNAVAILABLE_MESSAGE = "currently unavailable"

_ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.unavailable: 503,
    ErrorKind.quota_exhausted: 503,
    ErrorKind.rate_limited: 429,
}


def item_to_dict(item: PointOrCluster) -> dict[str, Any]:
    match item:
        case PointMarker(record=record):
            return {"type": "point", **record_to_dict(record)}
        case Cluster():
            return {
                "type": "cluster",
                "id": item.id,
                "lat": item.lat,
                "lng": item.lng,
                "count": item.count,
                "superCluster": item.super_cluster,
                "memberIds": [r.id for r in item.members],
            }
    raise TypeError(f"Unexpected map item: {type(item).__name__}")


def nearby_to_dict(item: NearbyPoint) -> dict[str, Any]:
    return {**record_to_dict(item.record), "distanceM": round(item.distance_m, 1)}


def error_body(kind: ErrorKind) -> dict[str, Any]:
    return {"error": UNAVAILABLE_MESSAGE, "kind": kind.value}


def outcome_status(outcome: Outcome[Any]) -> str:
    match outcome:
        case Ok():
            return "ok"
        case StaleServed():
            return "stale"
        case Err(kind=kind):
            return kind.value
    raise TypeError(f"Unexpected outcome: {type(outcome).__name__}")


def outcome_response(outcome: Outcome[list[T]], item_fn: Callable[[T], dict[str, Any]]) -> JSONResponse:
    """
    Ok / StaleServed -> 200 with items (an empty list is a valid answer),
    Err -> 503/429 with an explicit "currently unavailable" body.
    """
    match outcome:
        case Ok(value=items):
            return JSONResponse({"status": "ok", "items": [item_fn(i) for i in items]})
        case StaleServed(value=items, age_s=age_s):
            return JSONResponse(
                {"status": "stale", "ageS": round(age_s, 1), "items": [item_fn(i) for i in items]}
            )
        case Err(kind=kind):
            return JSONResponse(error_body(kind), status_code=_ERROR_STATUS.get(kind, 503))
    raise TypeError(f"Unexpected outcome: {type(outcome).__name__}")
