from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from telemetry.config import telemetry_enabled, telemetry_path
from telemetry.sql import CREATE_EVENTS_TABLE_SQL, INSERT_EVENTS_SQL, SUMMARY_SQL_TEMPLATE

__all__ = ["TelemetryStore", "telemetry_enabled", "telemetry_path"]

log = logging.getLogger(__name__)

MAX_QUEUED_EVENTS = 10_000
MAX_BATCH = 250
FLUSH_INTERVAL_S = 0.5


def _safe_float(v) -> float | None:
    try:
        if v is None:
            return None
        return float(v)
    except (TypeError, ValueError):
        return None


@dataclass
class TelemetryStore:
    """
    Request telemetry in a local DuckDB file.

    `record()` only enqueues; a single writer thread batches inserts, so
    request handlers never wait on DuckDB. When the queue is full new events
    are dropped.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[tuple | threading.Event]" = field(
        default_factory=lambda: queue.Queue(maxsize=MAX_QUEUED_EVENTS), repr=False
    )
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)
    dropped: int = 0

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_EVENTS_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="telemetry-writer", daemon=True)
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        endpoint: str,
        outcome: str,
        store: str,
        view_zoom: float | None,
        bbox: dict[str, float] | None,
        stats: dict[str, Any],
    ) -> None:
        self.start()
        b = bbox or {}
        row = (
            int(time.time() * 1000),
            str(endpoint),
            str(outcome),
            str(store),
            _safe_float(view_zoom),
            _safe_float(b.get("minLon")),
            _safe_float(b.get("minLat")),
            _safe_float(b.get("maxLon")),
            _safe_float(b.get("maxLat")),
            json.dumps(stats, ensure_ascii=False, default=str),
        )
        try:
            self._q.put_nowait(row)
        except queue.Full:
            self.dropped += 1

    def flush(self, *, timeout_s: float = 2.0) -> bool:
        """
        Block until everything recorded so far is written. False on timeout.
        """
        if self._worker is None:
            return True
        marker = threading.Event()
        try:
            self._q.put(marker, timeout=timeout_s)
        except queue.Full:
            return False
        return marker.wait(timeout_s)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        """
        Run a read query inside the backend process.

        DuckDB holds a file lock while the backend writes, so other processes
        should read telemetry through the API instead of opening the file.
        """
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        endpoint: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Per endpoint/outcome: request count, latency quantiles, items and cache-hit rate.
        """
        where = []
        params: list[Any] = []
        if endpoint:
            where.append("endpoint = ?")
            params.append(endpoint)
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)
        return [
            {
                "endpoint": endpoint_v,
                "outcome": outcome_v,
                "n": int(n),
                "avgTotalMs": _safe_float(avg_ms),
                "p50TotalMs": _safe_float(p50),
                "p95TotalMs": _safe_float(p95),
                "avgItems": _safe_float(avg_items),
                "cacheHitRate": _safe_float(hit_rate),
            }
            for endpoint_v, outcome_v, n, avg_ms, p50, p95, avg_items, hit_rate in rows
        ]

    def reset(self) -> None:
        # Stop the writer first so it cannot write to a closed connection.
        self.stop(timeout_s=2.0)
        with self._lock:
            try:
                self.conn.close()
            except duckdb.Error as e:
                log.debug("closing telemetry db failed: %s", e)
            self.path.unlink(missing_ok=True)

    def _write(self, batch: list[tuple]) -> None:
        if not batch:
            return
        try:
            with self._lock:
                self.conn.executemany(INSERT_EVENTS_SQL, batch)
                self.conn.execute("CHECKPOINT;")
        except duckdb.Error as e:
            log.warning("dropping %d telemetry event(s): %s", len(batch), e)

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[tuple] = []
        markers: list[threading.Event] = []
        deadline = time.monotonic() + FLUSH_INTERVAL_S

        while True:
            stopping = self._stop.is_set()
            try:
                item = self._q.get_nowait() if stopping else self._q.get(timeout=0.1)
            except queue.Empty:
                item = None

            if isinstance(item, threading.Event):
                markers.append(item)
            elif item is not None:
                batch.append(item)

            drained = stopping and item is None
            if markers or drained or len(batch) >= MAX_BATCH or time.monotonic() >= deadline:
                self._write(batch)
                batch = []
                # Everything queued before a flush marker is now on disk.
                for m in markers:
                    m.set()
                markers = []
                deadline = time.monotonic() + FLUSH_INTERVAL_S
            if drained:
                return
