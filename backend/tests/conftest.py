import asyncio
import sys
from pathlib import Path

import pytest


# Ensure `backend/` is on sys.path so tests can import local modules
# like `geo.*`, `viewport.*` and `providers.*`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))

from categories.registry import CategoryRegistry  # noqa: E402
from categories.types import CategorySpec  # noqa: E402
from geo.bounds import Bounds  # noqa: E402
from providers.errors import RateLimitedError  # noqa: E402
from providers.in_memory import InMemoryProvider  # noqa: E402
from providers.types import Entity  # noqa: E402
from viewport.config import ViewportSettings  # noqa: E402
from viewport.orchestrator import FetchOrchestrator  # noqa: E402
from viewport.static import StaticViewport  # noqa: E402


# Oslo-ish area used by most tests.
BASE_BOUNDS = Bounds(north=60.0, south=59.0, east=11.0, west=10.0)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyProvider:
    """
    Delegates to an inner provider but raises for categories listed in `failing`.
    """

    def __init__(self, inner, failing=()):
        self.inner = inner
        self.failing = set(failing)
        self.failed_calls = 0

    @property
    def calls(self):
        return self.inner.calls

    def calls_for(self, category):
        return self.inner.calls_for(category)

    async def fetch(self, bounds, zoom, category):
        if category in self.failing:
            await asyncio.sleep(0)
            self.failed_calls += 1
            raise RateLimitedError()
        return await self.inner.fetch(bounds, zoom, category)


@pytest.fixture
def registry():
    return CategoryRegistry(
        [
            CategorySpec(id="caves", kind="builtin", title="Caves", minZoom=10),
            CategorySpec(id="shelters", kind="builtin", title="Shelters", minZoom=10),
            CategorySpec(id="towers", kind="builtin", title="Towers", minZoom=10),
            CategorySpec(id="hammocks", kind="external", title="Hammocks", minZoom=12),
        ]
    )


@pytest.fixture
def entities():
    return [
        Entity(id="cave-1", category="caves", lon=10.5, lat=59.5, props={"name": "Hule"}),
        Entity(id="cave-2", category="caves", lon=10.6, lat=59.6, props={}),
        Entity(id="shelter-1", category="shelters", lon=10.4, lat=59.4, props={}),
        Entity(id="tower-1", category="towers", lon=10.3, lat=59.7, props={}),
        Entity(id="hammock-1", category="hammocks", lon=10.5, lat=59.5, props={}),
        # Far away from BASE_BOUNDS (Bergen).
        Entity(id="cave-far", category="caves", lon=5.3, lat=60.4, props={}),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def viewport():
    return StaticViewport(BASE_BOUNDS, zoom=12.0)


@pytest.fixture
def flaky_provider():
    return FlakyProvider


@pytest.fixture
def make_orchestrator(registry, entities, clock):
    """
    Factory: builtin and external providers are separate InMemoryProviders unless
    overridden.
    """

    def _make(*, providers=None, settings=None, telemetry=None, latency_s=0.0):
        if providers is None:
            providers = {
                "builtin": InMemoryProvider(entities, latency_s=latency_s),
                "external": InMemoryProvider(entities, latency_s=latency_s),
            }
        orch = FetchOrchestrator(
            providers,
            registry,
            settings=settings or ViewportSettings(debounce_s=0.02),
            telemetry=telemetry,
            clock=clock,
        )
        return orch, providers

    return _make
