from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from points.types import PointRecord, Provenance, coerce_record


# OSM amenity/shop tags -> our category.
_OSM_CATEGORY: dict[str, str] = {
    "toilets": "public",
    "restaurant": "restaurant",
    "fast_food": "restaurant",
    "cafe": "cafe",
    "fuel": "gas-station",
    "mall": "mall",
}


def load_overpass_points(path: Path) -> list[PointRecord]:
    """
    Input: Overpass JSON with `out center;` so:
    - nodes have `lat`/`lon`
    - ways/relations may have `center: {lat, lon}`

    Elements without usable coordinates are skipped.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    elements = data.get("elements") or []

    out: list[PointRecord] = []
    for el in elements:
        etype = el.get("type")
        eid = el.get("id")
        tags = el.get("tags") or {}

        lon = el.get("lon")
        lat = el.get("lat")
        if lon is None or lat is None:
            center = el.get("center") or {}
            lon = center.get("lon")
            lat = center.get("lat")

        if lon is None or lat is None or eid is None:
            continue

        category = _OSM_CATEGORY.get(str(tags.get("amenity") or tags.get("shop") or ""), "other")
        rec = coerce_record(
            {
                "id": f"{etype}/{eid}",
                "lat": lat,
                "lng": lon,
                "category": category,
                "title": tags.get("name"),
                "note": tags.get("description") or tags.get("opening_hours"),
                "source": Provenance.imported.value,
            }
        )
        if rec is not None:
            out.append(rec)

    return out


def load_seed_records(path: Path) -> list[PointRecord]:
    """
    Load seed records from either Overpass JSON (`{"elements": [...]}`) or a plain
    JSON list of record documents.
    """
    data: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and "elements" in data:
        return load_overpass_points(path)
    if not isinstance(data, list):
        raise ValueError(f"Invalid seed file root (expected list or Overpass JSON): {path}")
    out: list[PointRecord] = []
    for raw in data:
        rec = coerce_record(raw)
        if rec is not None:
            out.append(rec)
    return out
