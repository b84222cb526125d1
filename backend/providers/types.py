from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from geo.bounds import Bounds


@dataclass(frozen=True)
class Entity:
    """
    A point feature. `props` (name, description, ...) is opaque to the core.
    """

    id: str
    category: str
    lon: float
    lat: float
    props: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class CategoryProvider(Protocol):
    """
    Backend interface.

    Implementations must raise (not return an empty list) on network/backend failure so
    callers can fall back to previously known data.
    """

    async def fetch(self, bounds: Bounds, zoom: float, category: str) -> list[Entity]: ...
