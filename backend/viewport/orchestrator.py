from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from categories.registry import CategoryRegistry
from categories.types import CategoryKind, CategoryRef
from geo.bounds import Bounds
from geo.normalize import normalize, round_for_key, zoom_bucket
from poicache.inflight import InFlightTable
from poicache.viewport_cache import CacheKey, ViewportCache
from providers.errors import ProviderNotConfiguredError
from providers.types import CategoryProvider, Entity
from viewport.aggregator import ResultAggregator
from viewport.change import ChangeDetector
from viewport.config import ViewportSettings
from viewport.lifecycle import CycleContext, LifecycleToken
from viewport.types import FORCED_TRIGGERS, MapViewport, Trigger, ViewMarker

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """
    What one reconciliation cycle did; also the payload recorded to telemetry.
    """

    generation: int
    trigger: str
    zoom: float
    zoom_bucket: int
    bounds: Bounds
    below_threshold: list[CategoryRef] = field(default_factory=list)
    cache_hits: list[CategoryRef] = field(default_factory=list)
    fetched: list[CategoryRef] = field(default_factory=list)
    deduplicated: list[CategoryRef] = field(default_factory=list)
    failures: dict[CategoryRef, str] = field(default_factory=dict)
    superseded: bool = False
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failures and not self.superseded

    def fetches_by_kind(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for ref in self.fetched:
            out[ref.kind] = out.get(ref.kind, 0) + 1
        return out

    def as_stats(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "zoomBucket": self.zoom_bucket,
            "belowThreshold": len(self.below_threshold),
            "cacheHits": len(self.cache_hits),
            "fetched": len(self.fetched),
            "fetchedByKind": self.fetches_by_kind(),
            "deduplicated": len(self.deduplicated),
            "failures": {c.qualified: msg for c, msg in self.failures.items()},
            "superseded": self.superseded,
            "timingsMs": {"total": round(self.elapsed_ms, 2)},
        }


def _failure_summary(failures: Mapping[CategoryRef, str]) -> str:
    parts = [f"{c.qualified}: {msg}" for c, msg in failures.items()]
    return "Failed to load POIs for " + "; ".join(parts)


class FetchOrchestrator:
    """
    Viewport-driven POI fetching for one map session.

    Owns the viewport cache, the in-flight table, the result aggregator (with its
    latest-known-good snapshot) and the change detector; nothing else writes them.

    All bookkeeping happens synchronously between awaits, so no locks are needed: the
    only suspension points are the provider fetches.
    """

    def __init__(
        self,
        providers: Mapping[CategoryKind, CategoryProvider],
        registry: CategoryRegistry,
        *,
        settings: ViewportSettings | None = None,
        telemetry: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or ViewportSettings()
        self.registry = registry
        self._providers: dict[str, CategoryProvider] = dict(providers)
        self._cache = ViewportCache(
            ttl_s=self.settings.cache_ttl_s,
            max_entries=self.settings.cache_max_entries,
            decimals=self.settings.key_decimals,
            clock=clock,
        )
        self._inflight: InFlightTable[list[Entity]] = InFlightTable()
        self._aggregator = ResultAggregator()
        self._changes = ChangeDetector(
            move_threshold=self.settings.move_threshold,
            zoom_threshold=self.settings.zoom_threshold,
        )
        self._lifetime = LifecycleToken()
        self._telemetry = telemetry

        self.is_loading = False
        self.last_error: str | None = None

    # --- read-only views -------------------------------------------------

    @property
    def visible(self) -> dict[CategoryRef, list[Entity]]:
        return self._aggregator.visible()

    @property
    def snapshot(self) -> dict[CategoryRef, list[Entity]]:
        return self._aggregator.snapshot()

    @property
    def cache(self) -> ViewportCache:
        return self._cache

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    @property
    def closed(self) -> bool:
        return self._lifetime.cancelled

    def resolve_categories(self, identifiers: Iterable[CategoryRef | str]) -> list[CategoryRef]:
        return list(dict.fromkeys(self.registry.resolve(i) for i in identifiers))

    # --- control -----------------------------------------------------------

    def force_refresh(self) -> None:
        """
        Forget which viewport was last seen so the next cycle runs unconditionally.
        The cache is kept; failed categories are cache misses anyway.
        """
        self._changes.reset()
        self.last_error = None

    def clear_cache(self) -> None:
        self._cache.clear()
        self._inflight.abandon()
        self._aggregator.clear()
        self._changes.reset()

    def close(self) -> None:
        """
        Teardown: pending fetches keep running but nothing they return is applied.
        """
        self._lifetime.cancel()
        self._inflight.abandon()
        self._changes.abandon()
        self.is_loading = False

    # --- reconciliation ----------------------------------------------------

    async def reconcile(
        self,
        active: Iterable[CategoryRef],
        viewport: MapViewport,
        *,
        trigger: Trigger = "move",
    ) -> CycleReport | None:
        """
        Bring the visible mapping in line with the viewport and active categories.

        Returns None when the trigger was dropped (insignificant change, torn down) or
        the cycle failed before any fetch was issued.
        """
        if self._lifetime.cancelled:
            return None
        t0 = time.perf_counter()
        categories = list(dict.fromkeys(active))

        try:
            raw = viewport.get_bounds()
            zoom = float(viewport.get_zoom())
            fetch_bounds = normalize(raw, self.settings.buffer_factor)
            key_bounds = round_for_key(fetch_bounds, self.settings.key_decimals)
            bucket = zoom_bucket(zoom)
            thresholds = {ref: self.registry.min_zoom_for(ref) for ref in categories}
        except Exception as e:
            logger.exception("Viewport reconciliation failed before fetching")
            self.last_error = f"Failed to load POIs: {e}"
            if self._changes.pending is None:
                self.is_loading = False
            return None

        marker = ViewMarker(bounds=raw, zoom=zoom)
        if not self._changes.should_run(marker, force=trigger in FORCED_TRIGGERS):
            logger.debug("Skipping %s trigger: viewport change not significant", trigger)
            return None

        ctx = self._lifetime.next_cycle()
        self._changes.begin(marker)
        self.is_loading = True
        self.last_error = None
        self._aggregator.begin_cycle(categories)
        report = CycleReport(
            generation=ctx.generation,
            trigger=trigger,
            zoom=zoom,
            zoom_bucket=bucket,
            bounds=fetch_bounds,
        )

        # Resolved synchronously: consumers see these before any fetch is awaited.
        misses: list[tuple[CategoryRef, CacheKey]] = []
        for ref in categories:
            if zoom < thresholds[ref]:
                self._aggregator.record_empty(ref)
                report.below_threshold.append(ref)
                continue
            key = CacheKey(category=ref, bounds=key_bounds, zoom_bucket=bucket)
            entry = self._cache.get(key)
            if entry is not None and not self._cache.is_stale(entry):
                logger.debug("Cache hit: %s (%d POIs)", ref.qualified, len(entry.entities))
                self._aggregator.record_success(ref, entry.entities)
                report.cache_hits.append(ref)
                continue
            misses.append((ref, key))

        try:
            if misses:
                await asyncio.gather(
                    *(
                        self._settle(ctx, ref, key, fetch_bounds, zoom, report)
                        for ref, key in misses
                    )
                )
        except asyncio.CancelledError:
            # Shared fetches keep running (shielded) and still fill the cache; only this
            # cycle's claim on the loading state and the in-progress marker is released.
            if ctx.is_current:
                self._changes.abandon()
                self.is_loading = False
            logger.debug("Cycle %d cancelled", ctx.generation)
            raise

        report.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        if not ctx.is_current:
            report.superseded = True
            logger.debug("Cycle %d superseded; results discarded", ctx.generation)
            return report

        self._aggregator.commit()
        self._changes.complete(marker, ok=not report.failures)
        self.is_loading = False
        if report.failures:
            self.last_error = _failure_summary(report.failures)
        logger.info(
            "Cycle %d (%s) z=%.2f: %d hits, %d fetched, %d shared, %d below zoom, %d failed",
            ctx.generation,
            trigger,
            zoom,
            len(report.cache_hits),
            len(report.fetched),
            len(report.deduplicated),
            len(report.below_threshold),
            len(report.failures),
        )
        self._record_telemetry(report)
        return report

    async def _settle(
        self,
        ctx: CycleContext,
        ref: CategoryRef,
        key: CacheKey,
        bounds: Bounds,
        zoom: float,
        report: CycleReport,
    ) -> None:
        shared = self._inflight.get(key)
        if shared is None:
            shared = self._inflight.start(key, self._fetch_and_cache(ref, key, bounds, zoom))
            report.fetched.append(ref)
        else:
            logger.debug("Already loading: %s", ref.qualified)
            report.deduplicated.append(ref)

        try:
            # shield: one waiter being cancelled must not cancel the shared fetch.
            entities = await asyncio.shield(shared)
        except Exception as e:
            report.failures[ref] = str(e) or type(e).__name__
            logger.warning("Failed to fetch POIs for %s: %s", ref.qualified, e)
            if ctx.is_current:
                stale = self._cache.get(key)
                self._aggregator.record_failure(
                    ref, e, stale=stale.entities if stale is not None else None
                )
            return

        if ctx.is_current:
            self._aggregator.record_success(ref, entities)

    async def _fetch_and_cache(
        self, ref: CategoryRef, key: CacheKey, bounds: Bounds, zoom: float
    ) -> list[Entity]:
        provider = self._providers.get(ref.kind)
        if provider is None:
            raise ProviderNotConfiguredError(f"No provider configured for {ref.kind} categories")
        logger.debug("Fetching %s for %s", ref.qualified, key.bounds)
        entities = list(await provider.fetch(bounds, zoom, ref.id))
        if not self._lifetime.cancelled:
            self._cache.put(key, entities, bounds=bounds, zoom=zoom)
        return entities

    def _record_telemetry(self, report: CycleReport) -> None:
        if self._telemetry is None:
            return
        self._telemetry.record(
            trigger=report.trigger,
            view_zoom=report.zoom,
            bounds=report.bounds.as_dict(),
            stats={**report.as_stats(), "cache": self._cache.stats()},
        )
