"""Conflict resolution between the central quantity and a store's quantity.

Pure functions only.  ``MANUAL`` never produces a final answer: the
``Resolution`` carries ``needs_review=True`` and the caller defers the
decision to a human.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from storesync.exceptions import ManualReviewRequired


class ConflictResolutionStrategy(str, enum.Enum):
    USE_LOWEST = "USE_LOWEST"
    USE_HIGHEST = "USE_HIGHEST"
    USE_DATABASE = "USE_DATABASE"
    USE_STORE = "USE_STORE"
    AVERAGE = "AVERAGE"
    MANUAL = "MANUAL"

    @classmethod
    def parse(cls, value: str | ConflictResolutionStrategy) -> ConflictResolutionStrategy:
        if isinstance(value, cls):
            return value
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"unknown conflict resolution strategy: {value!r}") from None


@dataclass(frozen=True)
class Resolution:
    quantity: int
    strategy: ConflictResolutionStrategy
    needs_review: bool = False


def resolve(central: int, store: int, strategy: ConflictResolutionStrategy) -> Resolution:
    """Reconcile *central* and *store* quantities under *strategy*.

    AVERAGE floors toward negative infinity, so ``(3, 4)`` gives 3.
    """
    strategy = ConflictResolutionStrategy.parse(strategy)
    S = ConflictResolutionStrategy

    if strategy is S.USE_LOWEST:
        return Resolution(min(central, store), strategy)
    if strategy is S.USE_HIGHEST:
        return Resolution(max(central, store), strategy)
    if strategy is S.USE_DATABASE:
        return Resolution(central, strategy)
    if strategy is S.USE_STORE:
        return Resolution(store, strategy)
    if strategy is S.AVERAGE:
        return Resolution((central + store) // 2, strategy)
    # MANUAL: central is only a placeholder until someone decides
    return Resolution(central, strategy, needs_review=True)


def resolve_quantity(central: int, store: int, strategy: ConflictResolutionStrategy) -> int:
    """Like ``resolve()`` but returns the integer, raising for MANUAL."""
    resolution = resolve(central, store, strategy)
    if resolution.needs_review:
        raise ManualReviewRequired(central, store)
    return resolution.quantity
