from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Protocol

from geo.bounds import Bounds

MapEvent = Literal["move-end", "zoom-end"]
MOVE_END: MapEvent = "move-end"
ZOOM_END: MapEvent = "zoom-end"

# initial/categories/refresh always run a cycle; move is subject to change detection.
Trigger = Literal["initial", "move", "categories", "refresh"]
FORCED_TRIGGERS: frozenset[str] = frozenset({"initial", "categories", "refresh"})


class MapViewport(Protocol):
    """
    The map widget as seen by the orchestration layer.
    """

    def get_bounds(self) -> Bounds: ...

    def get_zoom(self) -> float: ...

    def on(self, event: MapEvent, handler: Callable[[], None]) -> None: ...

    def off(self, event: MapEvent, handler: Callable[[], None]) -> None: ...


@dataclass(frozen=True)
class ViewMarker:
    """
    Raw (unbuffered) viewport state remembered for change detection.
    """

    bounds: Bounds
    zoom: float
