from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Union

from geo.distance import haversine_km
from geo.tiles import lonlat_to_pixel
from lod.policy import DEFAULT_GRID_SIZE_PX, grid_size_px, should_cluster
from points.types import PointRecord, is_servable


@dataclass(frozen=True)
class PointMarker:
    record: PointRecord

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def lat(self) -> float:
        return self.record.lat

    @property
    def lng(self) -> float:
        return self.record.lng


@dataclass(frozen=True)
class Cluster:
    id: str
    lat: float
    lng: float
    count: int
    members: tuple[PointRecord, ...]
    super_cluster: bool = False


PointOrCluster = Union[PointMarker, Cluster]


@dataclass(frozen=True)
class ClusterOptions:
    grid_size_px: float = DEFAULT_GRID_SIZE_PX
    # Optional {maxZoom -> px} override of grid_size_px.
    grid_size_by_max_zoom: dict[float, float] | None = None
    max_zoom: float = 10.0
    min_cluster_size: int = 3
    super_cluster_max_zoom: float = 3.0
    super_cluster_min_points: int = 10
    large_cluster_size: int = 50
    compactness_km: float = 10.0
    max_split_depth: int = 32


@dataclass(frozen=True)
class _Projected:
    record: PointRecord
    px: float
    py: float


def cluster_points(
    records: Iterable[PointRecord], zoom: float, options: ClusterOptions | None = None
) -> list[PointOrCluster]:
    """
    Grid-cluster records in screen-pixel space for the given zoom.

    - zoom above `max_zoom`: every record is its own marker
    - zoom at or below `super_cluster_max_zoom` with more than
      `super_cluster_min_points` records: one cluster holding everything
    - otherwise records are bucketed into `grid_size_px` cells; cells with at
      least `min_cluster_size` members become clusters, the rest stay points.
      Large cells (>= `large_cluster_size`) spanning more than `compactness_km`
      are re-bucketed with half-size cells until every cluster is compact.

    Output: clusters in cell order, then standalone points by id. The result
    only depends on the set of input records, not their order.
    """
    opts = options or ClusterOptions()
    by_id: dict[str, PointRecord] = {}
    for r in records:
        if is_servable(r):
            by_id[r.id] = r
    recs = [by_id[k] for k in sorted(by_id)]
    if not recs:
        return []

    if not should_cluster(zoom, max_zoom=opts.max_zoom):
        return [PointMarker(r) for r in recs]

    if float(zoom) <= opts.super_cluster_max_zoom and len(recs) > opts.super_cluster_min_points:
        return [_make_cluster(f"super-cluster-{_fmt_zoom(zoom)}", recs, super_cluster=True)]

    grid = grid_size_px(zoom, opts.grid_size_by_max_zoom, default=opts.grid_size_px)
    projected = []
    for r in recs:
        px, py = lonlat_to_pixel(r.lng, r.lat, zoom)
        projected.append(_Projected(record=r, px=px, py=py))

    clusters: list[Cluster] = []
    singles: list[PointRecord] = []
    _bucket_into(projected, grid, zoom, opts, depth=0, label="", clusters=clusters, singles=singles)

    singles.sort(key=lambda r: r.id)
    out: list[PointOrCluster] = [*clusters]
    out.extend(PointMarker(r) for r in singles)
    return out


def _bucket_into(
    items: list[_Projected],
    grid: float,
    zoom: float,
    opts: ClusterOptions,
    *,
    depth: int,
    label: str,
    clusters: list[Cluster],
    singles: list[PointRecord],
) -> None:
    cells: dict[tuple[int, int], list[_Projected]] = {}
    for it in items:
        cells.setdefault((int(math.floor(it.px / grid)), int(math.floor(it.py / grid))), []).append(it)

    for (gx, gy) in sorted(cells):
        members = cells[(gx, gy)]
        cell_label = f"{label}{gx},{gy}"
        if len(members) < opts.min_cluster_size:
            singles.extend(m.record for m in members)
            continue

        recs = [m.record for m in members]
        if len(members) >= opts.large_cluster_size and not is_compact(recs, opts.compactness_km):
            if depth >= opts.max_split_depth:
                singles.extend(recs)
                continue
            _bucket_into(
                members,
                grid / 2.0,
                zoom,
                opts,
                depth=depth + 1,
                label=cell_label + "/",
                clusters=clusters,
                singles=singles,
            )
            continue

        clusters.append(_make_cluster(f"cluster-{cell_label}-{_fmt_zoom(zoom)}", recs))


def is_compact(records: list[PointRecord], max_km: float) -> bool:
    """
    True when no two records are more than `max_km` apart.
    """
    if len(records) < 2:
        return True
    min_lat = min(r.lat for r in records)
    max_lat = max(r.lat for r in records)
    min_lng = min(r.lng for r in records)
    max_lng = max(r.lng for r in records)
    # Upper bound on pairwise distance: the bbox diagonals and its wider edge.
    span = max(
        haversine_km(min_lat, min_lng, max_lat, max_lng),
        haversine_km(max_lat, min_lng, min_lat, max_lng),
        haversine_km(min_lat, min_lng, min_lat, max_lng),
        haversine_km(max_lat, min_lng, max_lat, max_lng),
    )
    if span <= max_km:
        return True
    return max_pairwise_km(records, stop_above=max_km) <= max_km


def max_pairwise_km(records: list[PointRecord], *, stop_above: float | None = None) -> float:
    """
    Largest great-circle distance between two records.

    With `stop_above`, returns the first distance exceeding it instead.
    """
    best = 0.0
    for i in range(len(records)):
        a = records[i]
        for j in range(i + 1, len(records)):
            b = records[j]
            best = max(best, haversine_km(a.lat, a.lng, b.lat, b.lng))
            if stop_above is not None and best > stop_above:
                return best
    return best


def _make_cluster(cluster_id: str, records: list[PointRecord], *, super_cluster: bool = False) -> Cluster:
    n = len(records)
    return Cluster(
        id=cluster_id,
        lat=sum(r.lat for r in records) / n,
        lng=sum(r.lng for r in records) / n,
        count=n,
        members=tuple(records),
        super_cluster=super_cluster,
    )


def _fmt_zoom(zoom: Any) -> str:
    return f"{float(zoom):g}"
