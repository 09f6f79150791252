"""Single-flight generation of recommendation lists.

At most one backend call runs per :class:`GenerationKey` at any moment.
Concurrent callers for the same key and the same history fingerprint join
the running call and receive the same :class:`ExpansionResult`; a caller
holding a newer history waits for the older call and then runs its own.
The get-or-create on the registry happens between two awaits, which makes
it atomic on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

import httpx

from ..batching import BatchPlan, BatchSize, meets_fill_threshold, next_batch_size
from ..config import Settings
from ..errors import ConfigurationError, GenerationError
from ..freshness import is_list_usable
from ..models import (
    GenerationContext,
    GenerationKey,
    HistorySnapshot,
    Recommendation,
    RecommendationList,
)
from ..user_config import UserConfig
from .cache_store import CacheStore
from .gemini import GeminiBackend
from .openai import OpenAIBackend
from .openrouter import OpenRouterBackend
from .prefetch import PrefetchScheduler
from .prompting import GenerationBackend

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendClients:
    """HTTP clients shared by every backend instance, one per upstream."""

    openrouter: httpx.AsyncClient | None = None
    openai: httpx.AsyncClient | None = None
    gemini: httpx.AsyncClient | None = None


def build_backends(
    settings: Settings, user_config: UserConfig | None, clients: BackendClients
) -> list[GenerationBackend]:
    """Return the backends available to a user, user-supplied keys first."""

    backends: list[GenerationBackend] = []

    gemini_key = (user_config and user_config.gemini_api_key) or settings.gemini_api_key
    if gemini_key and clients.gemini is not None:
        backends.append(GeminiBackend(settings, clients.gemini, api_key=gemini_key))

    openai_key = (user_config and user_config.openai_api_key) or settings.openai_api_key
    if openai_key and clients.openai is not None:
        backends.append(OpenAIBackend(settings, clients.openai, api_key=openai_key))

    openrouter_key = (
        user_config and user_config.openrouter_api_key
    ) or settings.openrouter_api_key
    if openrouter_key and clients.openrouter is not None:
        backends.append(
            OpenRouterBackend(
                settings,
                clients.openrouter,
                api_key=openrouter_key,
                model=user_config.openrouter_model if user_config else None,
            )
        )
    return backends


class BackendSelector:
    """Round-robin rotation over whichever backends a call has available."""

    def __init__(self) -> None:
        self._index = 0

    def select(self, backends: Sequence[GenerationBackend]) -> GenerationBackend:
        if not backends:
            raise ConfigurationError(
                "No AI provider configured. Add an OpenRouter, OpenAI or Gemini API key."
            )
        backend = backends[self._index % len(backends)]
        self._index += 1
        return backend

    def reset(self) -> None:
        self._index = 0


@dataclass(slots=True)
class ExpansionResult:
    """Outcome of one expansion, shared by every caller that joined it."""

    new_items: list[Recommendation] = field(default_factory=list)
    items: list[Recommendation] = field(default_factory=list)
    requested: int = 0
    summary: str | None = None
    backend: str | None = None
    fingerprint: str | None = None


@dataclass(slots=True)
class _Flight:
    """Running expansion together with the history it was started from."""

    task: asyncio.Task[ExpansionResult]
    fingerprint: str


class GenerationCoordinator:
    """Deduplicates concurrent expansions of the same recommendation list."""

    def __init__(
        self,
        store: CacheStore,
        settings: Settings,
        scheduler: PrefetchScheduler,
        *,
        selector: BackendSelector | None = None,
    ):
        self._store = store
        self._settings = settings
        self._plan = BatchPlan.from_settings(settings)
        self._selector = selector or BackendSelector()
        self._scheduler = scheduler
        self._scheduler.attach(self)
        self._in_flight: dict[GenerationKey, _Flight] = {}

    @property
    def plan(self) -> BatchPlan:
        return self._plan

    @property
    def scheduler(self) -> PrefetchScheduler:
        return self._scheduler

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, key: GenerationKey) -> bool:
        return key in self._in_flight

    async def expand(
        self,
        key: GenerationKey,
        current: RecommendationList | None,
        history: HistorySnapshot,
        context: GenerationContext,
        *,
        backends: Sequence[GenerationBackend],
        count: int | None = None,
    ) -> ExpansionResult:
        """Append a batch to the list for ``key``, joining any running call.

        ``count`` pins the batch size instead of the progressive plan. A
        cancelled caller stops waiting without cancelling the shared call.
        A call started from a different history is never joined: the caller
        waits for it to finish and then runs its own expansion.
        """

        fingerprint = history.fingerprint
        while True:
            flight = self._in_flight.get(key)
            if flight is None:
                task = asyncio.create_task(
                    self._run(key, current, history, context, backends, count),
                    name=f"generate:{key.label}",
                )
                self._in_flight[key] = _Flight(task, fingerprint)
                task.add_done_callback(lambda done: self._release(key, done))
                break
            if flight.fingerprint == fingerprint:
                logger.info("[%s] Joining in-flight generation", key.label)
                task = flight.task
                break
            logger.info(
                "[%s] Waiting for generation started from an older history", key.label
            )
            # Its outcome belongs to the older history and is not used here.
            await asyncio.wait([flight.task])
        return await asyncio.shield(task)

    async def extend(
        self,
        key: GenerationKey,
        current: RecommendationList | None,
        history: HistorySnapshot,
        context: GenerationContext,
        *,
        backends: Sequence[GenerationBackend],
    ) -> ExpansionResult | None:
        """Background variant of :meth:`expand` used for prefetching.

        Returns ``None`` without calling a backend when the user's stored
        history has moved on from ``history``.
        """

        if await self._history_replaced(key, history.fingerprint):
            logger.info("[%s] Skipping prefetch for a replaced history", key.label)
            return None
        return await self.expand(key, current, history, context, backends=backends)

    def _release(self, key: GenerationKey, task: asyncio.Task[ExpansionResult]) -> None:
        flight = self._in_flight.get(key)
        if flight is not None and flight.task is task:
            del self._in_flight[key]
        if task.done() and not task.cancelled():
            # Marks the exception retrieved when every waiter has gone away.
            task.exception()

    async def _run(
        self,
        key: GenerationKey,
        current: RecommendationList | None,
        history: HistorySnapshot,
        context: GenerationContext,
        backends: Sequence[GenerationBackend],
        count: int | None,
    ) -> ExpansionResult:
        task = asyncio.current_task()
        chained: RecommendationList | None = None
        try:
            fingerprint = history.fingerprint
            base = await self._merge_base(key, current, fingerprint)
            if count is not None:
                batch = BatchSize(count, f"fixed ({count})")
            else:
                batch = next_batch_size(len(base), self._plan)

            exclude_ids = [item.content_id for item in base]
            excluded = set(exclude_ids)
            if context.similar_to is not None and context.similar_to.content_id not in excluded:
                exclude_ids.append(context.similar_to.content_id)
                excluded.add(context.similar_to.content_id)

            backend = self._selector.select(backends)
            logger.info(
                "[%s] Requesting %s batch with %s existing items via %s",
                key.label,
                batch.label,
                len(base),
                backend.name,
            )
            try:
                response = await backend.generate(
                    history.items, exclude_ids, batch.size, context
                )
            except GenerationError:
                raise
            except Exception as exc:
                raise GenerationError(str(exc), backend=backend.name) from exc

            # Backends do not always honour the exclusion list.
            new_items: list[Recommendation] = []
            for item in response.items:
                if item.content_id in excluded:
                    continue
                excluded.add(item.content_id)
                new_items.append(item)

            merged = RecommendationList(
                user_id=key.user_id,
                category_id=key.category_id,
                items=[*base, *new_items],
                source_fingerprint=fingerprint,
                updated_at=datetime.utcnow(),
                summary=response.summary,
            )
            await self._store.save_recommendations(merged)
            logger.info(
                "[%s] Added %s new recommendations (%s total)",
                key.label,
                len(new_items),
                len(merged.items),
            )

            if (
                not base
                and count is None
                and meets_fill_threshold(
                    len(new_items), batch.size, self._settings.chained_fill_ratio
                )
            ):
                if await self._history_replaced(key, fingerprint):
                    logger.info(
                        "[%s] History changed during generation, not chaining", key.label
                    )
                else:
                    chained = merged

            return ExpansionResult(
                new_items=new_items,
                items=list(merged.items),
                requested=batch.size,
                summary=response.summary,
                backend=backend.name,
                fingerprint=fingerprint,
            )
        except GenerationError as exc:
            logger.warning("[%s] Generation failed: %s", key.label, exc)
            raise
        finally:
            if task is not None:
                self._release(key, task)
            if chained is not None:
                self._scheduler.submit(
                    f"chained:{key.label}",
                    self.extend(key, chained, history, context, backends=backends),
                )

    async def _history_replaced(self, key: GenerationKey, fingerprint: str) -> bool:
        stored = await self._store.get_history(key.user_id)
        return stored is not None and stored.fingerprint != fingerprint

    async def _merge_base(
        self,
        key: GenerationKey,
        current: RecommendationList | None,
        fingerprint: str,
    ) -> list[Recommendation]:
        """Return the list a new batch is appended to.

        The persisted list is re-read because an earlier flight for the same
        key may have extended it after the caller took its snapshot.
        """

        stored = await self._store.get_recommendations(key)
        stored_items: list[Recommendation] = []
        if is_list_usable(
            stored, fingerprint, self._settings.recommendation_ttl_seconds
        ):
            stored_items = list(stored.items)  # type: ignore[union-attr]

        caller_items: list[Recommendation] = []
        if current is not None and current.source_fingerprint == fingerprint:
            caller_items = list(current.items)

        candidates = stored_items if len(stored_items) >= len(caller_items) else caller_items
        base: list[Recommendation] = []
        seen: set[str] = set()
        for item in candidates:
            if item.content_id in seen:
                continue
            seen.add(item.content_id)
            base.append(item)
        return base
