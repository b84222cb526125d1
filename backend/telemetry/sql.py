from __future__ import annotations

CREATE_CYCLES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS cycles (
  ts_ms BIGINT,
  trigger TEXT,
  view_zoom DOUBLE,
  north DOUBLE,
  south DOUBLE,
  east DOUBLE,
  west DOUBLE,
  stats_json TEXT
);
"""

# Templates are rendered with str.format: literal braces must be doubled.
SUMMARY_SQL_TEMPLATE = """
SELECT
  trigger,
  COUNT(*) AS n,
  AVG(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE)) AS avg_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.50) AS p50_total_ms,
  quantile_cont(try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE), 0.95) AS p95_total_ms,
  SUM(try_cast(json_extract(stats_json, '$.fetched') AS BIGINT)) AS fetched,
  SUM(try_cast(json_extract(stats_json, '$.cacheHits') AS BIGINT)) AS cache_hits,
  SUM(try_cast(json_extract(stats_json, '$.deduplicated') AS BIGINT)) AS deduplicated,
  SUM(CASE WHEN json_extract_string(stats_json, '$.failures') NOT IN ('{{}}', 'null') THEN 1 ELSE 0 END) AS failed_cycles
FROM cycles
{where_sql}
GROUP BY trigger
ORDER BY trigger
"""

SLOWEST_SQL_TEMPLATE = """
SELECT
  ts_ms,
  trigger,
  try_cast(json_extract(stats_json, '$.timingsMs.total') AS DOUBLE) AS total_ms,
  try_cast(json_extract(stats_json, '$.fetched') AS BIGINT) AS fetched,
  try_cast(json_extract(stats_json, '$.cacheHits') AS BIGINT) AS cache_hits,
  view_zoom
FROM cycles
WHERE {where_sql}
ORDER BY total_ms DESC
LIMIT ?
"""

INSERT_CYCLES_SQL = """
INSERT INTO cycles
  (ts_ms, trigger, view_zoom, north, south, east, west, stats_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""
