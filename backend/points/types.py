from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Literal, Mapping

from geo.aoi import BBox


Category = Literal["public", "restaurant", "cafe", "gas-station", "mall", "other"]
CATEGORIES: tuple[str, ...] = ("public", "restaurant", "cafe", "gas-station", "mall", "other")


class Provenance(str, Enum):
    imported = "imported"
    user = "user"


@dataclass(frozen=True)
class Rating:
    mean: float = 0.0
    count: int = 0


@dataclass(frozen=True)
class PointRecord:
    """
    A single toilet on the map.

    Coordinates are WGS84 degrees. Records flagged `removed` are soft-deleted and
    must never appear in region results.
    """

    id: str
    lat: float
    lng: float
    category: str = "other"
    title: str | None = None
    note: str | None = None
    provenance: Provenance = Provenance.user
    removed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    rating: Rating = field(default_factory=Rating)


@dataclass(frozen=True)
class NearbyPoint:
    record: PointRecord
    distance_m: float


def valid_coordinates(lat: Any, lng: Any) -> bool:
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= float(lat) <= 90.0 and -180.0 <= float(lng) <= 180.0


def is_servable(record: PointRecord) -> bool:
    return not record.removed and valid_coordinates(record.lat, record.lng)


def sanitize_records(records: Iterable[Any]) -> list[PointRecord]:
    """
    Drop soft-deleted records and anything without usable coordinates.

    Raw mappings (store rows, JSON) are coerced first; one bad record never fails
    the batch.
    """
    out: list[PointRecord] = []
    for r in records:
        rec = r if isinstance(r, PointRecord) else coerce_record(r)
        if rec is None or not is_servable(rec):
            continue
        out.append(rec)
    return out


def filter_to_bounds(records: Iterable[PointRecord], bounds: BBox) -> list[PointRecord]:
    b = bounds.normalized()
    return [r for r in records if b.contains_point(r.lng, r.lat)]


def coerce_record(raw: Any) -> PointRecord | None:
    """
    Build a `PointRecord` from a loosely-shaped mapping.

    Accepts both the flat row shape ({"lat", "lng"}) and the nested document shape
    ({"coordinates": {"lat", "lng"}}) plus snake/camel case field names. Returns
    None when the record has no id or no valid coordinates; other bad fields are
    replaced by safe defaults.
    """
    if not isinstance(raw, Mapping):
        return None

    rid = raw.get("id")
    if rid is None or str(rid).strip() == "":
        return None

    coords = raw.get("coordinates")
    if isinstance(coords, Mapping):
        lat = coords.get("lat")
        lng = coords.get("lng", coords.get("lon"))
    else:
        lat = raw.get("lat")
        lng = raw.get("lng", raw.get("lon"))
    lat = _as_float(lat)
    lng = _as_float(lng)
    if lat is None or lng is None or not valid_coordinates(lat, lng):
        return None

    category = str(raw.get("category") or raw.get("type") or "other").strip().lower()
    if category not in CATEGORIES:
        category = "other"

    source = str(raw.get("provenance") or raw.get("source") or "user").strip().lower()
    provenance = Provenance.user if source == "user" else Provenance.imported

    removed = raw.get("removed", raw.get("is_removed", raw.get("isRemoved", False)))

    mean = _as_float(raw.get("rating_mean", raw.get("average_rating", raw.get("averageRating"))))
    count = _as_int(raw.get("rating_count", raw.get("review_count", raw.get("reviewCount"))))
    if mean is None or not (0.0 <= mean <= 5.0):
        mean = 0.0
    if count is None or count < 0:
        count = 0

    return PointRecord(
        id=str(rid),
        lat=float(lat),
        lng=float(lng),
        category=category,
        title=_as_text(raw.get("title")),
        note=_as_text(raw.get("note", raw.get("notes"))),
        provenance=provenance,
        removed=bool(removed),
        created_at=_as_datetime(raw.get("created_at", raw.get("createdAt"))),
        updated_at=_as_datetime(raw.get("updated_at", raw.get("updatedAt"))),
        rating=Rating(mean=float(mean), count=int(count)),
    )


def record_to_dict(record: PointRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "lat": record.lat,
        "lng": record.lng,
        "category": record.category,
        "title": record.title,
        "note": record.note,
        "provenance": record.provenance.value,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
        "rating": {"mean": record.rating.mean, "count": record.rating.count},
    }


def _as_float(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _as_int(v: Any) -> int | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _as_text(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _as_datetime(v: Any) -> datetime | None:
    if isinstance(v, datetime):
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)
    if isinstance(v, str) and v.strip():
        try:
            dt = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)
    return None
