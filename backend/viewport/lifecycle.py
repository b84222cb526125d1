from __future__ import annotations

from dataclasses import dataclass


class LifecycleToken:
    """
    Owned by one orchestrator. Each reconciliation cycle gets a `CycleContext`; a
    context stops being current when a newer cycle starts or the owner is torn down.
    """

    def __init__(self) -> None:
        self.generation = 0
        self.cancelled = False

    def next_cycle(self) -> "CycleContext":
        self.generation += 1
        return CycleContext(token=self, generation=self.generation)

    def cancel(self) -> None:
        self.cancelled = True


@dataclass(frozen=True)
class CycleContext:
    token: LifecycleToken
    generation: int

    @property
    def alive(self) -> bool:
        return not self.token.cancelled

    @property
    def is_current(self) -> bool:
        return self.alive and self.token.generation == self.generation
