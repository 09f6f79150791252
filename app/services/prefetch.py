"""Threshold-based prefetching of recommendation lists.

Prefetches run as detached tasks: the request that triggered one never
awaits it, and a failure only shows up in the logs.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import TYPE_CHECKING, Any, Coroutine, Sequence

from ..config import Settings
from ..models import GenerationContext, GenerationKey, HistorySnapshot, RecommendationList

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .generation import GenerationCoordinator
    from .prompting import GenerationBackend

logger = logging.getLogger(__name__)


class PrefetchScheduler:
    """Extends a recommendation list in the background before readers run out."""

    def __init__(self, settings: Settings):
        self._threshold = settings.prefetch_threshold
        self._coordinator: GenerationCoordinator | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    def attach(self, coordinator: "GenerationCoordinator") -> None:
        self._coordinator = coordinator

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def maybe_prefetch(
        self,
        key: GenerationKey,
        current: RecommendationList | None,
        end: int,
        history: HistorySnapshot,
        context: GenerationContext,
        *,
        backends: Sequence["GenerationBackend"],
    ) -> bool:
        """Dispatch a detached expansion when fewer than the threshold items remain.

        Returns whether an expansion was scheduled.
        """

        if self._coordinator is None:
            raise RuntimeError("PrefetchScheduler is not attached to a coordinator")

        length = len(current.items) if current is not None else 0
        remaining = length - end
        if remaining >= self._threshold:
            return False
        if self._coordinator.is_in_flight(key):
            logger.debug("[%s] Prefetch skipped, generation already in flight", key.label)
            return False

        logger.info(
            "[%s] Pre-fetching next batch in background (%s remaining)",
            key.label,
            max(remaining, 0),
        )
        self.submit(
            f"prefetch:{key.label}",
            self._coordinator.extend(key, current, history, context, backends=backends),
        )
        return True

    def submit(self, name: str, coroutine: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Run ``coroutine`` outside any request's cancellation scope."""

        task = asyncio.create_task(self._guard(name, coroutine), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(name: str, coroutine: Coroutine[Any, Any, Any]) -> None:
        try:
            await coroutine
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Background task %s failed: %s", name, exc)

    async def drain(self) -> None:
        """Wait until no background work is left, including work it spawned."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel outstanding background work."""

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
