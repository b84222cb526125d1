from __future__ import annotations

from typing import Iterable

from categories.types import CategoryRef
from providers.types import Entity


def _dedupe(entities: Iterable[Entity]) -> list[Entity]:
    seen: set[str] = set()
    out: list[Entity] = []
    for e in entities:
        if e.id in seen:
            continue
        seen.add(e.id)
        out.append(e)
    return out


class ResultAggregator:
    """
    The category -> entities mapping consumers see, plus the latest-known-good snapshot
    used when a category's refetch fails.
    """

    def __init__(self) -> None:
        self._visible: dict[CategoryRef, list[Entity]] = {}
        self._snapshot: dict[CategoryRef, list[Entity]] = {}
        self._succeeded: dict[CategoryRef, list[Entity]] = {}
        self._active: set[CategoryRef] = set()
        self.errors: dict[CategoryRef, str] = {}

    def begin_cycle(self, active: Iterable[CategoryRef]) -> None:
        keep = set(active)
        self._active = keep
        # Still-active categories keep showing their data until this cycle replaces it.
        self._visible = {c: v for c, v in self._visible.items() if c in keep}
        self._succeeded = {}
        self.errors = {}

    def record_empty(self, category: CategoryRef) -> None:
        self._visible[category] = []

    def record_success(self, category: CategoryRef, entities: Iterable[Entity]) -> None:
        pois = _dedupe(entities)
        self._visible[category] = pois
        self._succeeded[category] = pois

    def record_failure(
        self,
        category: CategoryRef,
        error: BaseException | str,
        *,
        stale: Iterable[Entity] | None = None,
    ) -> list[Entity]:
        """
        Substitute the snapshot value (else a stale cache value, else nothing) for a
        category whose fetch failed. Returns what is now shown.
        """
        self.errors[category] = str(error)
        if category in self._snapshot:
            fallback = list(self._snapshot[category])
        elif stale is not None:
            fallback = _dedupe(stale)
        else:
            fallback = []
        self._visible[category] = fallback
        return fallback

    def commit(self) -> None:
        # Like the visible mapping, the snapshot only covers the active categories; a
        # failed or below-zoom category keeps its previous value.
        snapshot = {c: v for c, v in self._snapshot.items() if c in self._active}
        snapshot.update(self._succeeded)
        self._snapshot = snapshot
        self._succeeded = {}

    def visible(self) -> dict[CategoryRef, list[Entity]]:
        return {c: list(v) for c, v in self._visible.items()}

    def snapshot(self) -> dict[CategoryRef, list[Entity]]:
        return {c: list(v) for c, v in self._snapshot.items()}

    def clear(self) -> None:
        self._visible = {}
        self._snapshot = {}
        self._succeeded = {}
        self._active = set()
        self.errors = {}
