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

from telemetry.sql import (
    CREATE_CYCLES_TABLE_SQL,
    INSERT_CYCLES_SQL,
    SLOWEST_SQL_TEMPLATE,
    SUMMARY_SQL_TEMPLATE,
)

logger = logging.getLogger(__name__)

_BATCH_SIZE = 250
_FLUSH_INTERVAL_S = 0.5


def _safe_float(v) -> float | None:
    try:
        if v is None:
            return None
        return float(v)
    except (TypeError, ValueError):
        return None


def _safe_int(v) -> int:
    try:
        return int(v or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class TelemetryStore:
    """
    One row per completed reconciliation cycle, written by a background thread so
    `record()` never blocks the event loop.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[dict[str, Any]]" = field(default_factory=queue.Queue, repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)
    _closed: bool = field(default=False, repr=False)

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_CYCLES_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, name="telemetry-writer", daemon=True
        )
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        """
        Stop the writer thread; queued rows are drained before it exits.
        """
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        trigger: str,
        view_zoom: float,
        bounds: dict[str, float],
        stats: dict[str, Any],
    ) -> None:
        if self._closed:
            return
        # Non-blocking: enqueue and return.
        self.start()
        try:
            self._q.put_nowait(
                {
                    "ts_ms": int(time.time() * 1000),
                    "trigger": str(trigger),
                    "view_zoom": float(view_zoom),
                    "north": float(bounds["north"]),
                    "south": float(bounds["south"]),
                    "east": float(bounds["east"]),
                    "west": float(bounds["west"]),
                    "stats_json": json.dumps(stats, ensure_ascii=False),
                }
            )
        except queue.Full:
            logger.debug("Telemetry queue full, dropping cycle row")

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """
        Wait until queued rows are written (used by tests).
        """
        if self._worker is None:
            return
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self._q.unfinished_tasks == 0:
                break
            time.sleep(0.01)
        # The writer flushes on a timer; give it one interval.
        time.sleep(_FLUSH_INTERVAL_S + 0.05)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        trigger: str | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where = []
        params: list[Any] = []
        if trigger:
            where.append("trigger = ?")
            params.append(trigger)
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)

        out: list[dict[str, Any]] = []
        for trigger_v, n, avg_ms, p50, p95, fetched, hits, deduped, failed in rows:
            fetched_n = _safe_int(fetched)
            hits_n = _safe_int(hits)
            lookups = fetched_n + hits_n
            out.append(
                {
                    "trigger": trigger_v,
                    "n": int(n),
                    "avgTotalMs": _safe_float(avg_ms),
                    "p50TotalMs": _safe_float(p50),
                    "p95TotalMs": _safe_float(p95),
                    "fetched": fetched_n,
                    "cacheHits": hits_n,
                    "deduplicated": _safe_int(deduped),
                    "failedCycles": _safe_int(failed),
                    "cacheHitRate": (hits_n / lookups) if lookups else None,
                }
            )
        return out

    def slowest(self, *, trigger: str | None = None, limit: int = 25) -> list[dict[str, Any]]:
        where = ["json_extract(stats_json, '$.timingsMs.total') IS NOT NULL"]
        params: list[Any] = []
        if trigger:
            where.append("trigger = ?")
            params.append(trigger)
        params.append(int(max(1, min(200, limit))))

        rows = self.query(SLOWEST_SQL_TEMPLATE.format(where_sql=" AND ".join(where)), params)
        return [
            {
                "tsMs": int(ts_ms),
                "trigger": trigger_v,
                "totalMs": _safe_float(total_ms),
                "fetched": _safe_int(fetched),
                "cacheHits": _safe_int(hits),
                "viewZoom": _safe_float(view_zoom),
            }
            for ts_ms, trigger_v, total_ms, fetched, hits, view_zoom in rows
        ]

    def close(self) -> None:
        """
        Drain queued rows and close the connection; later `record()` calls are dropped.
        """
        if self._closed:
            return
        self.stop(timeout_s=2.0)
        with self._lock:
            self.conn.close()
        self._closed = True

    def reset(self) -> None:
        # Stop the writer first so it can't write to a closed connection.
        self.stop(timeout_s=2.0)
        with self._lock:
            if not self._closed:
                self.conn.close()
            self._closed = True
            self.path.unlink(missing_ok=True)

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[dict[str, Any]] = []
        last_flush = time.time()

        def flush_batch() -> None:
            nonlocal batch
            if not batch:
                return
            with self._lock:
                self.conn.executemany(
                    INSERT_CYCLES_SQL,
                    [
                        (
                            e["ts_ms"],
                            e["trigger"],
                            e["view_zoom"],
                            e["north"],
                            e["south"],
                            e["east"],
                            e["west"],
                            e["stats_json"],
                        )
                        for e in batch
                    ],
                )
                # Make rows visible to readers immediately.
                self.conn.execute("CHECKPOINT;")
            batch = []

        while not self._stop.is_set():
            try:
                e = self._q.get(timeout=0.1)
            except queue.Empty:
                e = None

            if e is not None:
                batch.append(e)
                self._q.task_done()

            now = time.time()
            if len(batch) >= _BATCH_SIZE or (batch and (now - last_flush) >= _FLUSH_INTERVAL_S):
                flush_batch()
                last_flush = now

        # Drain remaining
        while True:
            try:
                e = self._q.get_nowait()
            except queue.Empty:
                break
            batch.append(e)
            self._q.task_done()
        flush_batch()


def open_store(path: Path) -> TelemetryStore:
    """
    Open (or create) the cycle telemetry database at `path` and start its writer.

    The caller owns the store and must `close()` it.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    store = TelemetryStore(path=path, conn=duckdb.connect(str(path)))
    store.ensure_schema()
    store.start()
    logger.debug("Telemetry store opened at %s", path)
    return store
