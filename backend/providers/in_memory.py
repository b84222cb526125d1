from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from geo.bounds import Bounds
from providers.types import Entity


@dataclass(frozen=True)
class FetchCall:
    bounds: Bounds
    zoom: float
    category: str


@dataclass
class _CategoryIndex:
    tree: STRtree
    entities: list[Entity]


class InMemoryProvider:
    """
    Serves preloaded entities, sliced by bounds via a per-category STRtree.

    Every `fetch` is recorded in `calls`, which makes this provider handy for checking
    how often the orchestrator really goes to a backend.
    """

    def __init__(self, entities: Iterable[Entity] = (), *, latency_s: float = 0.0) -> None:
        self.latency_s = float(latency_s)
        self.calls: list[FetchCall] = []
        self._by_category: dict[str, list[Entity]] = {}
        self._index: dict[str, _CategoryIndex] = {}
        self.add(entities)

    def add(self, entities: Iterable[Entity]) -> None:
        touched: set[str] = set()
        for e in entities:
            self._by_category.setdefault(e.category, []).append(e)
            touched.add(e.category)
        for category in touched:
            self._index.pop(category, None)

    def _tree(self, category: str) -> _CategoryIndex | None:
        idx = self._index.get(category)
        if idx is not None:
            return idx
        feats = self._by_category.get(category) or []
        if not feats:
            return None
        idx = _CategoryIndex(
            tree=STRtree([Point(e.lon, e.lat) for e in feats]),
            entities=feats,
        )
        self._index[category] = idx
        return idx

    def calls_for(self, category: str) -> int:
        return sum(1 for c in self.calls if c.category == category)

    async def fetch(self, bounds: Bounds, zoom: float, category: str) -> list[Entity]:
        self.calls.append(FetchCall(bounds=bounds, zoom=float(zoom), category=category))
        # Yield even with zero latency so concurrent callers overlap like real I/O.
        await asyncio.sleep(self.latency_s)

        idx = self._tree(category)
        if idx is None:
            return []
        query = shapely_box(bounds.west, bounds.south, bounds.east, bounds.north)
        # shapely>=2 returns integer indices into the input geometries.
        hits = sorted(int(i) for i in idx.tree.query(query, predicate="intersects"))
        return [idx.entities[i] for i in hits]
