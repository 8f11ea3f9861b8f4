from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

import duckdb

from geo.distance import bbox_around, haversine_m
from points.types import NearbyPoint, PointRecord, coerce_record, is_servable
from store.types import (
    PointStore,
    PointStoreError,
    PointStoreTimeout,
    QuotaExhaustedError,
    new_point_id,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = (
    "id",
    "lat",
    "lng",
    "category",
    "title",
    "note",
    "provenance",
    "removed",
    "created_at",
    "updated_at",
    "rating_mean",
    "rating_count",
)


class ReadQuota:
    """
    Sliding-window read budget.

    `consume()` raises `QuotaExhaustedError` once more than `max_reads` reads
    happened within the last `window_s` seconds.
    """

    def __init__(self, max_reads: int, window_s: float, *, clock: Callable[[], float] = time.monotonic):
        self.max_reads = max(1, int(max_reads))
        self.window_s = max(0.001, float(window_s))
        self._clock = clock
        self._reads: deque[float] = deque()
        self._lock = threading.Lock()

    def consume(self) -> None:
        with self._lock:
            now = self._clock()
            while self._reads and now - self._reads[0] >= self.window_s:
                self._reads.popleft()
            if len(self._reads) >= self.max_reads:
                raise QuotaExhaustedError(
                    f"read quota exhausted ({self.max_reads} reads per {self.window_s:g}s)"
                )
            self._reads.append(now)


class DuckDBPointStore(PointStore):
    """
    Point store backed by a single DuckDB table.

    Queries are blocking, so every call runs in a worker thread under a timeout.
    Each worker thread gets its own cursor on the shared database handle.
    """

    def __init__(
        self,
        *,
        path: str = ":memory:",
        threads: int = 1,
        timeout_s: float = 5.0,
        quota: ReadQuota | None = None,
    ):
        self.path = path
        self.timeout_s = float(timeout_s)
        self.quota = quota
        self._root = _connect(path, threads=threads)
        self._local = threading.local()
        self._init_lock = threading.Lock()
        _init_schema(self._root)

    def close(self) -> None:
        try:
            self._root.close()
        except duckdb.Error:
            pass

    def _conn(self) -> duckdb.DuckDBPyConnection:
        c = getattr(self._local, "conn", None)
        if c is None:
            c = self._root.cursor()
            self._local.conn = c
        return c

    async def _run(self, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        def _call() -> T:
            try:
                return fn(self._conn())
            except duckdb.Error as e:
                raise PointStoreError(str(e)) from e

        try:
            return await asyncio.wait_for(asyncio.to_thread(_call), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise PointStoreTimeout(f"point store did not answer within {self.timeout_s:g}s") from e

    def seed(self, records: Iterable[PointRecord]) -> int:
        """
        Insert records synchronously, keeping existing ids. Returns the number of
        rows passed to the insert.
        """
        rows = [_record_row(r) for r in records]
        if not rows:
            return 0
        with self._init_lock:
            placeholders = ", ".join("?" for _ in _COLUMNS)
            self._root.executemany(f"INSERT OR IGNORE INTO toilets VALUES ({placeholders})", rows)
        log.info("seeded %d point records into %s", len(rows), self.path)
        return len(rows)

    def count(self) -> int:
        row = self._root.execute("SELECT COUNT(*) FROM toilets WHERE NOT removed").fetchone()
        return int(row[0] or 0) if row else 0

    async def fetch_in_bounds(
        self, west: float, south: float, east: float, north: float
    ) -> list[PointRecord]:
        if self.quota is not None:
            self.quota.consume()

        def q(conn: duckdb.DuckDBPyConnection) -> list[tuple]:
            return conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM toilets "
                "WHERE NOT removed AND lng >= ? AND lng <= ? AND lat >= ? AND lat <= ? "
                "ORDER BY id",
                (float(west), float(east), float(south), float(north)),
            ).fetchall()

        rows = await self._run(q)
        return _rows_to_records(rows)

    async def fetch_near(self, lat: float, lng: float, radius_m: float) -> list[NearbyPoint]:
        b = bbox_around(lat, lng, radius_m)
        candidates = await self.fetch_in_bounds(b.min_lon, b.min_lat, b.max_lon, b.max_lat)
        out: list[NearbyPoint] = []
        for r in candidates:
            d = haversine_m(lat, lng, r.lat, r.lng)
            if d <= radius_m:
                out.append(NearbyPoint(record=r, distance_m=d))
        out.sort(key=lambda n: (n.distance_m, n.record.id))
        return out

    async def insert(self, record: PointRecord) -> str:
        pid = record.id or new_point_id()
        now = datetime.now(timezone.utc)
        row = _record_row(record, point_id=pid, created_at=record.created_at or now, updated_at=now)
        placeholders = ", ".join("?" for _ in _COLUMNS)

        def q(conn: duckdb.DuckDBPyConnection) -> None:
            conn.execute(f"INSERT OR REPLACE INTO toilets VALUES ({placeholders})", row)

        await self._run(q)
        return pid

    async def delete(self, point_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()

        def q(conn: duckdb.DuckDBPyConnection) -> None:
            conn.execute(
                "UPDATE toilets SET removed = TRUE, updated_at = ? WHERE id = ?",
                (now, str(point_id)),
            )

        await self._run(q)


def _connect(path: str, *, threads: int) -> duckdb.DuckDBPyConnection:
    if path != ":memory:":
        p = Path(path)
        if p.parent and str(p.parent) not in {".", ""}:
            p.parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(database=path, read_only=False, config={"threads": max(1, int(threads))})


def _init_schema(conn: duckdb.DuckDBPyConnection) -> None:
    # Timestamps are ISO-8601 text; coerce_record parses them back.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS toilets (
          id TEXT PRIMARY KEY,
          lat DOUBLE,
          lng DOUBLE,
          category TEXT,
          title TEXT,
          note TEXT,
          provenance TEXT,
          removed BOOLEAN,
          created_at TEXT,
          updated_at TEXT,
          rating_mean DOUBLE,
          rating_count INTEGER
        );
        """
    )


def _record_row(
    r: PointRecord,
    *,
    point_id: str | None = None,
    created_at: datetime | None = None,
    updated_at: datetime | None = None,
) -> tuple[Any, ...]:
    created = created_at or r.created_at
    updated = updated_at or r.updated_at
    return (
        point_id or r.id,
        float(r.lat),
        float(r.lng),
        r.category,
        r.title,
        r.note,
        r.provenance.value,
        bool(r.removed),
        created.isoformat() if created else None,
        updated.isoformat() if updated else None,
        float(r.rating.mean),
        int(r.rating.count),
    )


def _rows_to_records(rows: list[tuple]) -> list[PointRecord]:
    out: list[PointRecord] = []
    for row in rows:
        rec = coerce_record(dict(zip(_COLUMNS, row)))
        if rec is not None and is_servable(rec):
            out.append(rec)
    return out
