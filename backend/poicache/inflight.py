from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Generic, Hashable, TypeVar

T = TypeVar("T")


class InFlightTable(Generic[T]):
    """
    Pending fetches keyed like the cache.

    A second request for a key that is already being fetched awaits the same task
    instead of going to the backend again. Entries remove themselves when they settle.
    """

    def __init__(self) -> None:
        self._pending: dict[Hashable, asyncio.Task[T]] = {}

    def get(self, key: Hashable) -> asyncio.Task[T] | None:
        return self._pending.get(key)

    def start(self, key: Hashable, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        if key in self._pending:
            coro.close()
            raise RuntimeError(f"Fetch already in flight for {key!r}")
        task = asyncio.ensure_future(coro)
        self._pending[key] = task

        def _done(t: asyncio.Task[T]) -> None:
            # Only forget the key if nobody replaced it (e.g. after abandon()).
            if self._pending.get(key) is t:
                del self._pending[key]

        task.add_done_callback(_done)
        return task

    def abandon(self) -> None:
        """
        Forget every pending fetch without cancelling it; late results are ignored by
        their owners.
        """
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, key: object) -> bool:
        return key in self._pending
