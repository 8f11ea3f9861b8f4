import json
from datetime import timezone

from geo.aoi import BBox
from points.loaders import load_overpass_points, load_seed_records
from points.types import (
    PointRecord,
    Provenance,
    coerce_record,
    filter_to_bounds,
    record_to_dict,
    sanitize_records,
)


def test_coerce_record_accepts_nested_document_shape():
    rec = coerce_record(
        {
            "id": "toilet_1",
            "coordinates": {"lat": 42.69, "lng": 23.32},
            "type": "cafe",
            "notes": "  behind the counter ",
            "source": "imported",
            "average_rating": 4.5,
            "review_count": 2,
            "created_at": "2024-05-01T10:00:00Z",
            "is_removed": False,
        }
    )
    assert rec is not None
    assert (rec.lat, rec.lng) == (42.69, 23.32)
    assert rec.category == "cafe"
    assert rec.note == "behind the counter"
    assert rec.provenance is Provenance.imported
    assert rec.rating.mean == 4.5 and rec.rating.count == 2
    assert rec.created_at is not None and rec.created_at.tzinfo == timezone.utc


def test_coerce_record_defaults_bad_fields():
    rec = coerce_record({"id": 7, "lat": "42.7", "lng": 23.3, "category": "spaceport", "average_rating": 9})
    assert rec is not None
    assert rec.id == "7"
    assert rec.lat == 42.7
    assert rec.category == "other"
    assert rec.rating.mean == 0.0
    assert rec.provenance is Provenance.user


def test_coerce_record_drops_records_without_usable_coordinates():
    assert coerce_record({"id": "a"}) is None
    assert coerce_record({"id": "a", "lat": 95.0, "lng": 23.3}) is None
    assert coerce_record({"id": "a", "lat": "nan", "lng": 23.3}) is None
    assert coerce_record({"lat": 42.0, "lng": 23.3}) is None
    assert coerce_record("not a mapping") is None


def test_sanitize_records_drops_removed_and_invalid_without_failing():
    out = sanitize_records(
        [
            PointRecord(id="ok", lat=42.7, lng=23.3),
            PointRecord(id="gone", lat=42.7, lng=23.3, removed=True),
            PointRecord(id="broken", lat=123.0, lng=23.3),
            {"id": "raw", "lat": 42.71, "lng": 23.31},
            {"id": "raw-bad", "lat": None, "lng": 23.31},
            None,
        ]
    )
    assert [r.id for r in out] == ["ok", "raw"]


def test_filter_to_bounds_is_edge_inclusive():
    b = BBox(min_lon=23.3, min_lat=42.6, max_lon=23.4, max_lat=42.7)
    recs = [
        PointRecord(id="edge", lat=42.7, lng=23.4),
        PointRecord(id="in", lat=42.65, lng=23.35),
        PointRecord(id="out", lat=42.71, lng=23.35),
    ]
    assert [r.id for r in filter_to_bounds(recs, b)] == ["edge", "in"]


def test_record_to_dict_is_json_ready():
    d = record_to_dict(PointRecord(id="x", lat=1.0, lng=2.0, title="T"))
    assert json.loads(json.dumps(d))["title"] == "T"
    assert d["provenance"] == "user"
    assert d["rating"] == {"mean": 0.0, "count": 0}


def test_load_overpass_points_maps_amenities(tmp_path):
    p = tmp_path / "overpass.json"
    p.write_text(
        json.dumps(
            {
                "elements": [
                    {"type": "node", "id": 1, "lat": 42.7, "lon": 23.3, "tags": {"amenity": "toilets"}},
                    {"type": "way", "id": 2, "center": {"lat": 42.6, "lon": 23.2}, "tags": {"amenity": "fuel", "name": "OMV"}},
                    {"type": "node", "id": 3, "tags": {"amenity": "toilets"}},
                ]
            }
        ),
        encoding="utf-8",
    )
    recs = load_overpass_points(p)
    assert [r.id for r in recs] == ["node/1", "way/2"]
    assert recs[0].category == "public"
    assert recs[1].category == "gas-station"
    assert recs[1].title == "OMV"
    assert all(r.provenance is Provenance.imported for r in recs)


def test_load_seed_records_reads_document_lists(tmp_path):
    p = tmp_path / "seed.json"
    p.write_text(
        json.dumps([{"id": "a", "lat": 42.7, "lng": 23.3}, {"id": "b"}]),
        encoding="utf-8",
    )
    assert [r.id for r in load_seed_records(p)] == ["a"]


def test_repo_seed_file_loads():
    from config.settings import resolve_repo_path

    recs = load_seed_records(resolve_repo_path("data/seed/toilets_sofia.json"))
    assert len(recs) >= 10
    assert any(r.removed for r in recs)
    assert len(sanitize_records(recs)) == len(recs) - 1
