from __future__ import annotations

CREATE_EVENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS events (
  ts_ms BIGINT,
  endpoint TEXT,
  outcome TEXT,
  store TEXT,
  view_zoom DOUBLE,
  bbox_min_lon DOUBLE,
  bbox_min_lat DOUBLE,
  bbox_max_lon DOUBLE,
  bbox_max_lat DOUBLE,
  stats_json TEXT
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  endpoint,
  outcome,
  COUNT(*) AS n,
  AVG(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE)) AS avg_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.50) AS p50_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.95) AS p95_total_ms,
  AVG(try_cast(json_extract(stats_json, '$.items') AS DOUBLE)) AS avg_items,
  AVG(CASE WHEN json_extract_string(stats_json, '$.source') = 'cache' THEN 1 ELSE 0 END) AS cache_hit_rate
FROM events
{where_sql}
GROUP BY endpoint, outcome
ORDER BY endpoint, outcome
"""

INSERT_EVENTS_SQL = """
INSERT INTO events
  (ts_ms, endpoint, outcome, store, view_zoom, bbox_min_lon, bbox_min_lat, bbox_max_lon, bbox_max_lat, stats_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
