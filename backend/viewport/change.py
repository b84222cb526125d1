from __future__ import annotations

import asyncio
import logging
from typing import Callable

from geo.normalize import has_moved
from viewport.types import ViewMarker

logger = logging.getLogger(__name__)


class ChangeDetector:
    """
    Decides whether a viewport trigger deserves a new reconciliation cycle.

    Two markers are kept: the viewport of the cycle in progress (re-entrancy guard) and
    the viewport of the last cycle that completed without failures.
    """

    def __init__(self, *, move_threshold: float = 0.3, zoom_threshold: float = 0.5) -> None:
        self.move_threshold = float(move_threshold)
        self.zoom_threshold = float(zoom_threshold)
        self.pending: ViewMarker | None = None
        self.completed: ViewMarker | None = None

    def is_significant(self, new: ViewMarker, old: ViewMarker | None) -> bool:
        if old is None:
            return True
        if has_moved(new.bounds, old.bounds, self.move_threshold):
            return True
        return abs(float(new.zoom) - float(old.zoom)) >= self.zoom_threshold

    def should_run(self, marker: ViewMarker, *, force: bool = False) -> bool:
        if force:
            return True
        if self.pending is not None:
            return self.is_significant(marker, self.pending)
        return self.is_significant(marker, self.completed)

    def begin(self, marker: ViewMarker) -> None:
        self.pending = marker

    def complete(self, marker: ViewMarker, *, ok: bool) -> None:
        # A cycle with failures must not mark the viewport as already seen.
        if ok:
            self.completed = marker
        if self.pending == marker:
            self.pending = None

    def abandon(self) -> None:
        self.pending = None

    def reset(self) -> None:
        self.pending = None
        self.completed = None


class Debouncer:
    """
    Trailing-edge debounce on the running asyncio loop.

    Every `trigger()` restarts the timer; `callback` runs once, `delay_s` after the
    last trigger.
    """

    def __init__(self, delay_s: float, callback: Callable[[], None]) -> None:
        self.delay_s = max(0.0, float(delay_s))
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay_s, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        logger.debug("Debounce window elapsed, firing")
        self._callback()
