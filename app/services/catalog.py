"""Page server tying history, cached lists and generation together."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator

from ..categories import SIMILAR_CATEGORY, ContentType, get_category
from ..config import Settings
from ..errors import ConfigurationError, GenerationError, ProviderError
from ..freshness import is_history_fresh, is_list_usable
from ..models import (
    CatalogMeta,
    GenerationContext,
    GenerationKey,
    HistorySnapshot,
    RecommendationList,
    SimilarSeed,
    placeholder_meta,
)
from ..user_config import UserConfig
from ..utils import is_imdb_id
from .cache_store import CacheStore
from .generation import BackendClients, GenerationCoordinator, build_backends
from .prompting import GenerationBackend
from .trakt import TraktClient

logger = logging.getLogger(__name__)

EMPTY_HISTORY_MESSAGE = (
    "Your Trakt watch history is required for recommendations. Watch and "
    "scrobble a few titles on Trakt, then come back."
)
HISTORY_UNAVAILABLE_MESSAGE = (
    "Could not load your Trakt watch history. Check that your Trakt account is "
    "connected and try again later."
)
GENERATION_UNAVAILABLE_MESSAGE = (
    "Recommendations are temporarily unavailable. Check your AI provider key or "
    "try again in a few minutes."
)


class KeyState(str, Enum):
    """Lifecycle of one (user, category) recommendation list."""

    EMPTY = "empty"
    PARTIAL = "partial"
    GROWING = "growing"
    STABLE = "stable"
    STALE = "stale"


class CatalogService:
    """Serves paginated recommendation catalogs backed by cached lists."""

    def __init__(
        self,
        settings: Settings,
        store: CacheStore,
        trakt_client: TraktClient,
        coordinator: GenerationCoordinator,
        clients: BackendClients,
    ):
        self._settings = settings
        self._store = store
        self._trakt = trakt_client
        self._coordinator = coordinator
        self._clients = clients
        self._history_locks: dict[str, asyncio.Lock] = {}
        self._history_lock_users: dict[str, int] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Launch the periodic expired-row cleanup loop."""

        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the cleanup loop and cancel outstanding prefetches."""

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        await self._coordinator.scheduler.stop()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.cleanup_interval_seconds)
            try:
                await self.cleanup_expired()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled cache cleanup failed: %s", exc)

    async def cleanup_expired(self) -> None:
        stats = await self._store.cleanup_expired(
            history_ttl_seconds=self._settings.history_ttl_seconds,
            recommendation_ttl_seconds=self._settings.recommendation_ttl_seconds,
        )
        if stats.history_deleted or stats.recommendations_deleted:
            logger.info(
                "Cleaned up %s history snapshots and %s recommendation lists",
                stats.history_deleted,
                stats.recommendations_deleted,
            )

    def backends_for(self, user_config: UserConfig | None) -> list[GenerationBackend]:
        return build_backends(self._settings, user_config, self._clients)

    @asynccontextmanager
    async def _history_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialise history refreshes per user; idle locks are dropped."""

        lock = self._history_locks.setdefault(user_id, asyncio.Lock())
        self._history_lock_users[user_id] = self._history_lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._history_lock_users[user_id] - 1
            if remaining:
                self._history_lock_users[user_id] = remaining
            else:
                del self._history_lock_users[user_id]
                del self._history_locks[user_id]

    async def resolve_history(self, user_config: UserConfig) -> HistorySnapshot:
        """Return a fresh history snapshot, fetching and persisting one if needed.

        A provider failure falls back to the last stored snapshot; without one
        the :class:`ProviderError` propagates.
        """

        user_id = user_config.user_id
        async with self._history_lock(user_id):
            cached = await self._store.get_history(user_id)
            if is_history_fresh(cached, self._settings.history_ttl_seconds):
                return cached  # type: ignore[return-value]

            try:
                items = await self._trakt.fetch_history(user_config.trakt_access_token)
            except ProviderError as exc:
                if cached is None:
                    raise
                logger.warning(
                    "History refresh failed for %s, serving stale snapshot: %s",
                    user_id[:8],
                    exc,
                )
                return cached

            username = None
            if cached is None:
                username = await self._trakt.fetch_username(
                    user_config.trakt_access_token
                )
            snapshot = HistorySnapshot(
                user_id=user_id, items=items, fetched_at=datetime.utcnow()
            )
            await self._store.save_history(snapshot, trakt_username=username)
            logger.info(
                "Stored %s history items for %s (fingerprint %s)",
                len(items),
                user_id[:8],
                snapshot.fingerprint,
            )
            return snapshot

    async def get_page(
        self,
        user_config: UserConfig,
        content_type: ContentType,
        category_id: str,
        skip: int = 0,
        page_size: int | None = None,
    ) -> list[CatalogMeta]:
        """Return one page of a category catalog.

        Never raises for provider or generation failures. When the page would
        be empty on the first request, a single placeholder entry describing
        the problem is returned instead.
        """

        size = page_size or self._settings.page_size
        skip = max(skip, 0)
        category = get_category(category_id)
        if category is None or not category.supports(content_type):
            return [
                placeholder_meta(
                    f"Unknown catalog '{category_id}' for {content_type}.",
                    content_type,
                )
            ]

        try:
            history = await self.resolve_history(user_config)
        except ConfigurationError as exc:
            return [placeholder_meta(str(exc), content_type)]
        except ProviderError as exc:
            logger.warning("History unavailable for %s: %s", user_config.user_id[:8], exc)
            return [placeholder_meta(HISTORY_UNAVAILABLE_MESSAGE, content_type)]

        if history.is_empty():
            return [placeholder_meta(EMPTY_HISTORY_MESSAGE, content_type)]

        key = GenerationKey(user_config.user_id, category.id)
        fingerprint = history.fingerprint
        context = GenerationContext(
            category=category,
            content_type=content_type,
            temperature=user_config.temperature,
        )
        backends = self.backends_for(user_config)

        current = await self._store.get_recommendations(key)
        if not is_list_usable(
            current, fingerprint, self._settings.recommendation_ttl_seconds
        ):
            if current is not None:
                logger.info("[%s] Cached list is stale, regenerating", key.label)
            current = None

        end = skip + size
        problem: str | None = None
        # A partially filled page is served as-is; the prefetch below tops it up.
        if current is None or len(current.items) <= skip:
            try:
                result = await self._coordinator.expand(
                    key, current, history, context, backends=backends
                )
            except ConfigurationError as exc:
                problem = str(exc)
            except GenerationError as exc:
                logger.warning("[%s] Serving cached items only: %s", key.label, exc)
                problem = GENERATION_UNAVAILABLE_MESSAGE
            except Exception as exc:
                logger.exception("[%s] Expansion failed: %s", key.label, exc)
                problem = GENERATION_UNAVAILABLE_MESSAGE
            else:
                if result.fingerprint != fingerprint:
                    logger.warning(
                        "[%s] Discarding result generated from another history", key.label
                    )
                    problem = GENERATION_UNAVAILABLE_MESSAGE
                else:
                    current = RecommendationList(
                        user_id=key.user_id,
                        category_id=key.category_id,
                        items=result.items,
                        source_fingerprint=fingerprint,
                        updated_at=datetime.utcnow(),
                        summary=result.summary,
                    )

        items = current.items if current is not None else []
        page = [
            CatalogMeta.from_recommendation(item, content_type)
            for item in items[skip:end]
        ]

        if problem is None:
            self._coordinator.scheduler.maybe_prefetch(
                key, current, end, history, context, backends=backends
            )

        if not page and skip == 0:
            return [placeholder_meta(problem or GENERATION_UNAVAILABLE_MESSAGE, content_type)]
        return page

    async def key_state(
        self, user_id: str, category_id: str, history: HistorySnapshot
    ) -> KeyState:
        key = GenerationKey(user_id, category_id)
        if self._coordinator.is_in_flight(key):
            return KeyState.GROWING
        stored = await self._store.get_recommendations(key)
        if stored is None or not stored.items:
            return KeyState.EMPTY
        if not is_list_usable(
            stored, history.fingerprint, self._settings.recommendation_ttl_seconds
        ):
            return KeyState.STALE
        if len(stored.items) < self._coordinator.plan.first:
            return KeyState.PARTIAL
        return KeyState.STABLE

    async def get_similar(
        self,
        user_config: UserConfig,
        content_id: str,
        content_type: ContentType,
        title: str | None = None,
    ) -> list[CatalogMeta]:
        """Return titles similar to ``content_id``, generating them once per user."""

        if not is_imdb_id(content_id):
            return []

        key = GenerationKey.similar(user_config.user_id, content_id)
        # Similar lists depend only on the seed, so they use an empty history.
        history = HistorySnapshot(
            user_id=user_config.user_id, items=[], fetched_at=datetime.utcnow()
        )
        cached = await self._store.get_recommendations(key)
        if is_list_usable(
            cached, history.fingerprint, self._settings.recommendation_ttl_seconds
        ) and cached.items:  # type: ignore[union-attr]
            logger.info("[%s] Using cached similar titles", key.label)
            items = cached.items  # type: ignore[union-attr]
        else:
            context = GenerationContext(
                category=SIMILAR_CATEGORY,
                content_type=content_type,
                similar_to=SimilarSeed(
                    content_id=content_id,
                    title=title or f"Content {content_id}",
                    content_type=content_type,
                ),
                temperature=user_config.temperature,
            )
            try:
                result = await self._coordinator.expand(
                    key,
                    None,
                    history,
                    context,
                    backends=self.backends_for(user_config),
                    count=self._settings.similar_count,
                )
            except (ConfigurationError, GenerationError) as exc:
                logger.warning("[%s] Similar titles unavailable: %s", key.label, exc)
                return []
            items = result.items

        return [CatalogMeta.from_recommendation(item, content_type) for item in items]

    async def get_meta(
        self,
        user_config: UserConfig,
        content_type: ContentType,
        content_id: str,
        title: str | None = None,
    ) -> dict[str, Any] | None:
        """Return a minimal meta object whose links point at similar titles.

        Full details are left to the client's own metadata source.
        """

        if not is_imdb_id(content_id):
            return None

        similar = await self.get_similar(user_config, content_id, content_type, title)
        meta: dict[str, Any] = {
            "id": content_id,
            "type": content_type,
            "name": title or f"Loading... ({content_id})",
        }
        if similar:
            meta["links"] = [
                {
                    "name": item.name,
                    "category": "Similar",
                    "url": f"stremio:///detail/{item.type}/{item.id}",
                }
                for item in similar
            ]
        return meta

    async def invalidate_user(self, user_id: str) -> None:
        """Drop every cached record for the user."""

        await self._store.invalidate_history(user_id)
        await self._store.invalidate_recommendations(user_id)
        logger.info("Invalidated cached data for %s", user_id[:8])
