from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, get_args

from pydantic import BaseModel, Field


# builtin: government feature service / OSM categories shipped with the app
# external: categories defined in the relational backend
CategoryKind = Literal["builtin", "external"]
CATEGORY_KINDS: tuple[str, ...] = get_args(CategoryKind)


@dataclass(frozen=True)
class CategoryRef:
    """
    Tagged category identifier.

    The kind is fixed when the category is registered; it is the only thing the
    orchestrator looks at to pick a data provider.
    """

    kind: CategoryKind
    id: str

    def __post_init__(self) -> None:
        if self.kind not in CATEGORY_KINDS:
            raise ValueError(f"Unknown category kind: {self.kind!r}")
        if not (self.id or "").strip():
            raise ValueError("Category id must be non-empty")

    @property
    def qualified(self) -> str:
        return f"{self.kind}:{self.id}"

    def __str__(self) -> str:
        return self.qualified


class CategorySpec(BaseModel):
    """
    A category as declared in a category YAML file (or registered at runtime).
    """

    id: str = Field(min_length=1)
    kind: CategoryKind = "builtin"
    title: str
    minZoom: float = Field(default=10.0, ge=0.0, le=24.0)
    enabled: bool = True
    # Presentation hints passed through to the UI layer.
    color: str | None = None
    icon: str | None = None
    sortOrder: int = 0

    @property
    def ref(self) -> CategoryRef:
        return CategoryRef(kind=self.kind, id=self.id)


class CategoryFile(BaseModel):
    categories: list[CategorySpec] = Field(default_factory=list)
