from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Iterable

import yaml

from categories.types import CATEGORY_KINDS, CategoryFile, CategoryKind, CategoryRef, CategorySpec

logger = logging.getLogger(__name__)


class UnknownCategoryError(KeyError):
    pass


def categories_dir() -> Path:
    # Shipped YAML sits inside the package.
    return Path(os.getenv("TRAILPOI_CATEGORIES_DIR") or Path(__file__).resolve().parent)


class CategoryRegistry:
    """
    Per-category metadata, most importantly the minimum zoom below which a category
    is neither requested nor displayed.
    """

    def __init__(self, specs: Iterable[CategorySpec] = ()) -> None:
        self._specs: dict[CategoryRef, CategorySpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: CategorySpec) -> CategoryRef:
        ref = spec.ref
        if ref in self._specs:
            raise ValueError(f"Duplicate category: {ref.qualified}")
        self._specs[ref] = spec
        return ref

    def get(self, ref: CategoryRef) -> CategorySpec:
        spec = self._specs.get(ref)
        if spec is None:
            raise UnknownCategoryError(ref.qualified)
        return spec

    def min_zoom_for(self, ref: CategoryRef) -> float:
        return float(self.get(ref).minZoom)

    def resolve(self, identifier: CategoryRef | str) -> CategoryRef:
        """
        Accepts a `CategoryRef`, a qualified "kind:id" string or a bare id when only one
        kind registers it.
        """
        if isinstance(identifier, CategoryRef):
            self.get(identifier)
            return identifier

        raw = (identifier or "").strip()
        kind, sep, rest = raw.partition(":")
        if sep and kind in CATEGORY_KINDS:
            ref = CategoryRef(kind=kind, id=rest)  # type: ignore[arg-type]
            self.get(ref)
            return ref

        matches = [ref for ref in self._specs if ref.id == raw]
        if not matches:
            raise UnknownCategoryError(raw)
        if len(matches) > 1:
            raise UnknownCategoryError(
                f"Ambiguous category id {raw!r}: "
                + ", ".join(sorted(m.qualified for m in matches))
            )
        return matches[0]

    def all(self, kind: CategoryKind | None = None) -> list[CategorySpec]:
        specs = [s for s in self._specs.values() if kind is None or s.kind == kind]
        return sorted(specs, key=lambda s: (s.sortOrder, s.kind, s.id))

    def refs(self) -> list[CategoryRef]:
        return [s.ref for s in self.all()]

    def __contains__(self, ref: object) -> bool:
        return ref in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def _load_yaml(path: Path) -> dict:
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid category yaml root: {path}")
    return data


def load_registry(directory: Path | None = None) -> CategoryRegistry:
    """
    Build a registry from every `*.yaml` file in the categories directory.

    Disabled categories are skipped.
    """
    root = directory or categories_dir()
    registry = CategoryRegistry()
    if not root.exists():
        logger.warning("Categories directory not found: %s", root)
        return registry
    for p in sorted(root.glob("*.yaml"), key=lambda x: str(x)):
        parsed = CategoryFile.model_validate(_load_yaml(p))
        for spec in parsed.categories:
            if spec.enabled:
                registry.register(spec)
    logger.debug("Loaded %d categories from %s", len(registry), root)
    return registry


@lru_cache(maxsize=1)
def default_registry() -> CategoryRegistry:
    return load_registry()


def clear_registry_cache() -> None:
    """
    Forget the cached default registry so YAML edits are picked up without a restart.
    """
    default_registry.cache_clear()
