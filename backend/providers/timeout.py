from __future__ import annotations

import asyncio

from geo.bounds import Bounds
from providers.errors import ProviderTimeoutError
from providers.types import CategoryProvider, Entity


class TimeoutProvider:
    """
    Aborts a wrapped provider's fetch after `timeout_s`.

    This is the only place a request is really cancelled; the orchestrator itself never
    cancels fetches, it only discards results it no longer needs.
    """

    def __init__(self, inner: CategoryProvider, timeout_s: float) -> None:
        if not timeout_s > 0:
            raise ValueError(f"timeout_s must be positive, got {timeout_s!r}")
        self.inner = inner
        self.timeout_s = float(timeout_s)

    async def fetch(self, bounds: Bounds, zoom: float, category: str) -> list[Entity]:
        try:
            return await asyncio.wait_for(
                self.inner.fetch(bounds, zoom, category), timeout=self.timeout_s
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"Fetching {category} timed out after {self.timeout_s:g}s"
            ) from e
