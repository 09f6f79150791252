"""Batch sizing for successive generation calls.

Loading follows a 15 -> 45 -> 100 progression by default: a small first
batch renders the first page quickly, a medium second batch is fetched while
the user reads it, and large batches amortise the backend's fixed latency
during deep pagination.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple


class BatchSize(NamedTuple):
    size: int
    label: str


@dataclass(frozen=True)
class BatchPlan:
    """Tier sizes used by :func:`next_batch_size`."""

    first: int = 15
    second: int = 45
    steady: int = 100

    @classmethod
    def from_settings(cls, settings) -> "BatchPlan":
        return cls(
            first=settings.first_batch_size,
            second=settings.second_batch_size,
            steady=settings.batch_size,
        )


DEFAULT_PLAN = BatchPlan()


def next_batch_size(existing_count: int, plan: BatchPlan = DEFAULT_PLAN) -> BatchSize:
    """Return how many items to request given how many are already cached."""

    if existing_count <= 0:
        return BatchSize(plan.first, f"initial ({plan.first})")
    if existing_count <= plan.first:
        return BatchSize(plan.second, f"second ({plan.second})")
    return BatchSize(plan.steady, f"standard ({plan.steady})")


def meets_fill_threshold(received: int, requested: int, ratio: float) -> bool:
    """Return whether a batch came back full enough to chain the next tier."""

    if requested <= 0:
        return False
    return received >= requested * ratio
