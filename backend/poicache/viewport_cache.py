from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from categories.types import CategoryRef
from geo.bounds import Bounds, RoundedBounds
from geo.normalize import round_for_key, zoom_bucket
from providers.types import Entity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    category: CategoryRef
    bounds: RoundedBounds
    zoom_bucket: int

    @classmethod
    def for_view(
        cls, category: CategoryRef, bounds: Bounds, zoom: float, *, decimals: int = 4
    ) -> "CacheKey":
        return cls(
            category=category,
            bounds=round_for_key(bounds, decimals),
            zoom_bucket=zoom_bucket(zoom),
        )


@dataclass(frozen=True)
class CacheEntry:
    entities: tuple[Entity, ...]
    # Exact (full-precision) request the entry was fetched for.
    bounds: Bounds
    zoom: float
    fetched_at: float


class ViewportCache:
    """
    Result sets keyed by (category, rounded bounds, zoom bucket).

    Stale entries are kept (not served as fresh) so they stay available as a fallback
    when a refetch fails. Size is bounded by evicting the oldest entries by fetch time.
    """

    def __init__(
        self,
        *,
        ttl_s: float = 300.0,
        max_entries: int = 200,
        decimals: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries!r}")
        self.ttl_s = float(ttl_s)
        self.max_entries = int(max_entries)
        self.decimals = int(decimals)
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}

    def key(self, category: CategoryRef, bounds: Bounds, zoom: float) -> CacheKey:
        return CacheKey.for_view(category, bounds, zoom, decimals=self.decimals)

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def lookup(self, category: CategoryRef, bounds: Bounds, zoom: float) -> CacheEntry | None:
        return self.get(self.key(category, bounds, zoom))

    def put(
        self, key: CacheKey, entities: Iterable[Entity], *, bounds: Bounds, zoom: float
    ) -> CacheEntry:
        entry = CacheEntry(
            entities=tuple(entities),
            bounds=bounds,
            zoom=float(zoom),
            fetched_at=self._clock(),
        )
        # Re-inserting moves the key to the end; its timestamp is what eviction uses.
        self._entries.pop(key, None)
        self._entries[key] = entry
        self._evict()
        return entry

    def is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.fetched_at > self.ttl_s

    def _evict(self) -> None:
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].fetched_at)[:excess]
        for k, _entry in oldest:
            del self._entries[k]
        logger.debug("Evicted %d cache entries (limit %d)", excess, self.max_entries)

    def clear(self) -> None:
        self._entries.clear()

    def clear_stale(self) -> int:
        stale = [k for k, e in self._entries.items() if self.is_stale(e)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def cached_count(self, category: CategoryRef) -> int:
        """
        Distinct entities of a category across all cached viewports.
        """
        seen: set[str] = set()
        for k, entry in self._entries.items():
            if k.category != category:
                continue
            seen.update(e.id for e in entry.entities)
        return len(seen)

    def is_cached(self, category: CategoryRef) -> bool:
        return any(k.category == category for k in self._entries)

    def keys(self) -> list[CacheKey]:
        return list(self._entries.keys())

    def stats(self) -> dict[str, Any]:
        stale = sum(1 for e in self._entries.values() if self.is_stale(e))
        return {
            "entries": len(self._entries),
            "staleEntries": stale,
            "maxEntries": self.max_entries,
            "ttlSeconds": self.ttl_s,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
