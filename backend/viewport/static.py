from __future__ import annotations

from typing import Callable

from geo.bounds import Bounds
from viewport.types import MOVE_END, ZOOM_END, MapEvent


class StaticViewport:
    """
    In-process `MapViewport`: state is set explicitly and events are emitted by hand.

    Used for headless sessions (scripts, tests) where no map widget exists.
    """

    def __init__(self, bounds: Bounds, zoom: float) -> None:
        self.bounds = bounds
        self.zoom = float(zoom)
        self._handlers: dict[str, list[Callable[[], None]]] = {}

    def get_bounds(self) -> Bounds:
        return self.bounds

    def get_zoom(self) -> float:
        return self.zoom

    def on(self, event: MapEvent, handler: Callable[[], None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: MapEvent, handler: Callable[[], None]) -> None:
        handlers = self._handlers.get(event) or []
        if handler in handlers:
            handlers.remove(handler)

    def handler_count(self, event: MapEvent) -> int:
        return len(self._handlers.get(event) or [])

    def emit(self, event: MapEvent) -> None:
        for handler in list(self._handlers.get(event) or []):
            handler()

    def move_to(self, bounds: Bounds, zoom: float | None = None) -> None:
        """
        Pan (and optionally zoom), then fire the events a map widget would fire.
        """
        zoomed = zoom is not None and float(zoom) != self.zoom
        self.bounds = bounds
        if zoomed:
            self.zoom = float(zoom)
        self.emit(MOVE_END)
        if zoomed:
            self.emit(ZOOM_END)
