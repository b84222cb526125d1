from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Mapping

from categories.registry import CategoryRegistry, default_registry
from categories.types import CategoryKind, CategoryRef
from providers.types import CategoryProvider, Entity
from telemetry.store import TelemetryStore, open_store
from viewport.change import Debouncer
from viewport.config import ViewportSettings, settings_from_env
from viewport.orchestrator import CycleReport, FetchOrchestrator
from viewport.types import MOVE_END, ZOOM_END, MapViewport, Trigger

logger = logging.getLogger(__name__)


class ViewportSession:
    """
    Wires a map viewport to a `FetchOrchestrator` for the lifetime of one map view.

    - move-end / zoom-end are debounced (trailing edge)
    - changing the active categories reconciles immediately
    - `close()` cancels the pending debounce, tears the orchestrator down and closes the
      telemetry store the session owns (if any)

    Must be used from within a running asyncio loop.
    """

    def __init__(
        self,
        viewport: MapViewport,
        orchestrator: FetchOrchestrator,
        *,
        active: Iterable[CategoryRef | str] = (),
        debounce_s: float | None = None,
        telemetry: TelemetryStore | None = None,
    ) -> None:
        self.viewport = viewport
        self.orchestrator = orchestrator
        self._telemetry = telemetry
        self._active: tuple[CategoryRef, ...] = tuple(orchestrator.resolve_categories(active))
        delay = orchestrator.settings.debounce_s if debounce_s is None else debounce_s
        self._debouncer = Debouncer(delay, self._on_quiescent)
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    # --- state exposed to the UI layer ----------------------------------------

    @property
    def active(self) -> tuple[CategoryRef, ...]:
        return self._active

    @property
    def visible(self) -> dict[CategoryRef, list[Entity]]:
        return self.orchestrator.visible

    @property
    def is_loading(self) -> bool:
        return self.orchestrator.is_loading

    @property
    def last_error(self) -> str | None:
        return self.orchestrator.last_error

    @property
    def closed(self) -> bool:
        return self._closed

    # --- lifecycle ---------------------------------------------------------------

    def start(self) -> asyncio.Task:
        if self._closed:
            raise RuntimeError("Session is closed")
        if not self._started:
            self.viewport.on(MOVE_END, self._on_viewport_change)
            self.viewport.on(ZOOM_END, self._on_viewport_change)
            self._started = True
        return self._spawn("initial")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._debouncer.cancel()
        if self._started:
            self.viewport.off(MOVE_END, self._on_viewport_change)
            self.viewport.off(ZOOM_END, self._on_viewport_change)
        self.orchestrator.close()
        if self._telemetry is not None:
            self._telemetry.close()
        logger.debug("Viewport session closed (%d cycles still settling)", len(self._tasks))

    async def wait_idle(self) -> None:
        """
        Wait until no debounce is pending and every spawned cycle has finished.
        """
        while True:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            elif self._debouncer.pending:
                await asyncio.sleep(self._debouncer.delay_s / 2 or 0.001)
            else:
                return

    # --- triggers ----------------------------------------------------------------

    def set_active_categories(self, categories: Iterable[CategoryRef | str]) -> asyncio.Task | None:
        if self._closed:
            return None
        self._active = tuple(self.orchestrator.resolve_categories(categories))
        # Toggling a layer should feel instant: no debounce.
        return self._spawn("categories")

    def force_refresh(self) -> asyncio.Task | None:
        if self._closed:
            return None
        self._debouncer.cancel()
        self.orchestrator.force_refresh()
        return self._spawn("refresh")

    def _on_viewport_change(self, *_args: object) -> None:
        if self._closed:
            return
        self._debouncer.trigger()

    def _on_quiescent(self) -> None:
        if self._closed:
            return
        self._spawn("move")

    def _spawn(self, trigger: Trigger) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        task: asyncio.Task[CycleReport | None] = loop.create_task(
            self.orchestrator.reconcile(self._active, self.viewport, trigger=trigger)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def open_session(
    viewport: MapViewport,
    providers: Mapping[CategoryKind, CategoryProvider],
    *,
    active: Iterable[CategoryRef | str] = (),
    registry: CategoryRegistry | None = None,
    settings: ViewportSettings | None = None,
) -> ViewportSession:
    """
    Build a session with the library defaults: the shipped categories, settings from
    `TRAILPOI_*` env vars, and a telemetry store when `settings.telemetry` is on. The
    store is owned by the session and closed with it.
    """
    settings = settings or settings_from_env()
    store = open_store(settings.telemetry_db_path()) if settings.telemetry else None
    try:
        orchestrator = FetchOrchestrator(
            providers,
            registry or default_registry(),
            settings=settings,
            telemetry=store,
        )
        return ViewportSession(viewport, orchestrator, active=active, telemetry=store)
    except Exception:
        if store is not None:
            store.close()
        raise
