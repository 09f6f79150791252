from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, cast

from app.config import Settings
from app.database import Database
from app.errors import GenerationError, ProviderError
from app.models import (
    PLACEHOLDER_ID,
    PLACEHOLDER_NAME,
    GenerationKey,
    GenerationResult,
    HistorySnapshot,
    Recommendation,
    RecommendationList,
    WatchedItem,
)
from app.services.cache_store import CacheStore
from app.services.catalog import CatalogService, KeyState
from app.services.generation import BackendClients, GenerationCoordinator
from app.services.prefetch import PrefetchScheduler
from app.services.trakt import TraktClient
from app.user_config import UserConfig

USER = UserConfig(traktAccessToken="trakt-token")


class StubTrakt:
    """Trakt client double returning a fixed history."""

    def __init__(self, items: list[WatchedItem] | None = None, error: Exception | None = None):
        self.items = items or []
        self.error = error
        self.history_calls = 0

    async def fetch_history(self, access_token: str, *, limit: int | None = None):
        self.history_calls += 1
        if self.error is not None:
            raise self.error
        return list(self.items)

    async def fetch_username(self, access_token: str) -> str | None:
        return "viewer"


class CountingBackend:
    name = "counting"

    def __init__(self, *, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.calls: list[int] = []
        self._next = 1

    async def generate(self, history, exclude_ids, count, context) -> GenerationResult:
        self.calls.append(count)
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        items = [
            Recommendation(
                content_id=f"tt{self._next + offset:07d}",
                title=f"Pick {self._next + offset}",
                justification="Because you liked Heat",
            )
            for offset in range(count)
        ]
        self._next += count
        return GenerationResult(items=items)


class FixedBackendCatalogService(CatalogService):
    """Catalog service using injected backends instead of configured keys."""

    def __init__(self, *args: Any, backends: list[Any], **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.backends = backends

    def backends_for(self, user_config):  # type: ignore[override]
        return list(self.backends)


def _watched(content_id: str = "tt0113277", title: str = "Heat") -> WatchedItem:
    return WatchedItem(
        content_id=content_id,
        title=title,
        year=1995,
        watched_at=datetime(2024, 1, 10, 22, 0),
    )


def _build(tmp_path, trakt: StubTrakt, backends: list[Any], **overrides: Any):
    settings = Settings(_env_file=None, **overrides)
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    store = CacheStore(database.session_factory)
    scheduler = PrefetchScheduler(settings)
    coordinator = GenerationCoordinator(store, settings, scheduler)
    service = FixedBackendCatalogService(
        settings,
        store,
        cast(TraktClient, trakt),
        coordinator,
        BackendClients(),
        backends=backends,
    )
    return database, store, scheduler, service


def test_empty_history_returns_placeholder(tmp_path) -> None:
    backend = CountingBackend()
    database, _, _, service = _build(tmp_path, StubTrakt([]), [backend])

    async def runner():
        await database.create_all()
        page = await service.get_page(USER, "movie", "for-you", 0, 15)
        await database.dispose()
        return page

    page = asyncio.run(runner())

    assert len(page) == 1
    assert page[0].id == PLACEHOLDER_ID
    assert page[0].name == PLACEHOLDER_NAME
    assert "history is required" in (page[0].description or "")
    assert backend.calls == []


def test_first_page_and_concurrent_request_share_generation(tmp_path) -> None:
    backend = CountingBackend(delay=0.05)
    trakt = StubTrakt([_watched()])
    database, _, scheduler, service = _build(tmp_path, trakt, [backend])

    async def runner():
        await database.create_all()

        async def delayed_page():
            await asyncio.sleep(0.001)
            return await service.get_page(USER, "movie", "for-you", 0, 15)

        first, second = await asyncio.gather(
            service.get_page(USER, "movie", "for-you", 0, 15), delayed_page()
        )
        await scheduler.drain()
        await database.dispose()
        return first, second

    first, second = asyncio.run(runner())

    assert [meta.id for meta in first] == [f"tt{value:07d}" for value in range(1, 16)]
    assert [meta.id for meta in second] == [meta.id for meta in first]
    assert first[0].description == "Because you liked Heat"
    assert backend.calls.count(15) == 1
    assert backend.calls[0] == 15
    assert trakt.history_calls == 1


def test_deep_page_returns_tail_and_prefetches(tmp_path) -> None:
    backend = CountingBackend()
    history = HistorySnapshot(user_id=USER.user_id, items=[_watched()], fetched_at=datetime.utcnow())
    database, store, scheduler, service = _build(tmp_path, StubTrakt([_watched()]), [backend])
    key = GenerationKey(USER.user_id, "for-you")

    async def runner():
        await database.create_all()
        await store.save_history(history)
        await store.save_recommendations(
            RecommendationList(
                user_id=key.user_id,
                category_id=key.category_id,
                items=[
                    Recommendation(content_id=f"tt5{value:06d}", title=f"Cached {value}")
                    for value in range(100)
                ],
                source_fingerprint=history.fingerprint,
                updated_at=datetime.utcnow(),
            )
        )
        page = await service.get_page(USER, "movie", "for-you", 90, 15)
        calls_during_request = list(backend.calls)
        await scheduler.drain()
        stored = await store.get_recommendations(key)
        await database.dispose()
        return page, calls_during_request, stored

    page, calls_during_request, stored = asyncio.run(runner())

    assert [meta.id for meta in page] == [f"tt5{value:06d}" for value in range(90, 100)]
    assert calls_during_request == []
    assert backend.calls == [100]
    assert stored is not None and len(stored.items) == 200


def test_changed_history_triggers_fresh_generation(tmp_path) -> None:
    backend = CountingBackend()
    old_history = HistorySnapshot(
        user_id=USER.user_id, items=[_watched()], fetched_at=datetime.utcnow()
    )
    database, store, scheduler, service = _build(tmp_path, StubTrakt(), [backend])
    key = GenerationKey(USER.user_id, "for-you")

    async def runner():
        await database.create_all()
        await store.save_recommendations(
            RecommendationList(
                user_id=key.user_id,
                category_id=key.category_id,
                items=[
                    Recommendation(content_id=f"tt6{value:06d}", title=f"Old {value}")
                    for value in range(30)
                ],
                source_fingerprint=old_history.fingerprint,
                updated_at=datetime.utcnow(),
            )
        )
        new_history = HistorySnapshot(
            user_id=USER.user_id,
            items=[_watched("tt0114369", "Se7en"), _watched()],
            fetched_at=datetime.utcnow(),
        )
        await store.save_history(new_history)
        page = await service.get_page(USER, "movie", "for-you", 0, 15)
        await scheduler.drain()
        await database.dispose()
        return page

    page = asyncio.run(runner())

    assert backend.calls[0] == 15
    assert not any(meta.id.startswith("tt6") for meta in page)
    assert len(page) == 15


def test_backend_failures_degrade_to_placeholder(tmp_path) -> None:
    backend = CountingBackend(error=GenerationError("model overloaded", backend="counting"))
    database, _, scheduler, service = _build(tmp_path, StubTrakt([_watched()]), [backend])

    async def runner():
        await database.create_all()
        page = await service.get_page(USER, "movie", "for-you", 0, 15)
        deeper = await service.get_page(USER, "movie", "for-you", 15, 15)
        await scheduler.drain()
        await database.dispose()
        return page, deeper

    page, deeper = asyncio.run(runner())

    assert len(page) == 1 and page[0].is_placeholder()
    assert deeper == []


def test_missing_provider_keys_surface_configuration_message(tmp_path) -> None:
    database, _, _, service = _build(tmp_path, StubTrakt([_watched()]), [])

    async def runner():
        await database.create_all()
        page = await service.get_page(USER, "series", "drama", 0)
        await database.dispose()
        return page

    page = asyncio.run(runner())

    assert len(page) == 1
    assert page[0].type == "series"
    assert "No AI provider configured" in (page[0].description or "")


def test_unknown_category_or_type_returns_placeholder(tmp_path) -> None:
    backend = CountingBackend()
    trakt = StubTrakt([_watched()])
    database, _, _, service = _build(tmp_path, trakt, [backend])

    async def runner():
        await database.create_all()
        unknown = await service.get_page(USER, "movie", "does-not-exist", 0)
        # Classics only produces movie catalogs.
        unsupported = await service.get_page(USER, "series", "classics", 0)
        await database.dispose()
        return unknown, unsupported

    unknown, unsupported = asyncio.run(runner())

    assert unknown[0].is_placeholder()
    assert unsupported[0].is_placeholder()
    assert trakt.history_calls == 0
    assert backend.calls == []


def test_provider_error_serves_stale_history(tmp_path) -> None:
    backend = CountingBackend()
    trakt = StubTrakt(error=ProviderError("Trakt is down", status_code=503))
    database, store, scheduler, service = _build(tmp_path, trakt, [backend])

    async def runner():
        await database.create_all()
        await store.save_history(
            HistorySnapshot(
                user_id=USER.user_id,
                items=[_watched()],
                fetched_at=datetime.utcnow() - timedelta(hours=3),
            )
        )
        page = await service.get_page(USER, "movie", "for-you", 0)
        await scheduler.drain()
        await database.dispose()
        return page

    page = asyncio.run(runner())

    assert trakt.history_calls == 1
    assert len(page) == 15
    assert not page[0].is_placeholder()


def test_provider_error_without_snapshot_returns_placeholder(tmp_path) -> None:
    trakt = StubTrakt(error=ProviderError("unauthorised", status_code=401))
    database, _, _, service = _build(tmp_path, trakt, [CountingBackend()])

    async def runner():
        await database.create_all()
        page = await service.get_page(USER, "movie", "for-you", 0)
        await database.dispose()
        return page

    page = asyncio.run(runner())

    assert len(page) == 1
    assert "Trakt watch history" in (page[0].description or "")


def test_fresh_history_is_not_refetched(tmp_path) -> None:
    trakt = StubTrakt([_watched()])
    database, _, scheduler, service = _build(tmp_path, trakt, [CountingBackend()])

    async def runner():
        await database.create_all()
        first = await service.resolve_history(USER)
        second = await service.resolve_history(USER)
        await database.dispose()
        return first, second

    first, second = asyncio.run(runner())

    assert trakt.history_calls == 1
    assert first.fingerprint == second.fingerprint


def test_key_state_transitions(tmp_path) -> None:
    backend = CountingBackend(delay=0.05)
    database, store, scheduler, service = _build(tmp_path, StubTrakt([_watched()]), [backend])
    history = HistorySnapshot(user_id=USER.user_id, items=[_watched()], fetched_at=datetime.utcnow())
    key = GenerationKey(USER.user_id, "for-you")

    def _list(length: int, fingerprint: str) -> RecommendationList:
        return RecommendationList(
            user_id=key.user_id,
            category_id=key.category_id,
            items=[
                Recommendation(content_id=f"tt7{value:06d}", title=str(value))
                for value in range(length)
            ],
            source_fingerprint=fingerprint,
            updated_at=datetime.utcnow(),
        )

    async def runner() -> list[KeyState]:
        await database.create_all()
        states = [await service.key_state(key.user_id, key.category_id, history)]
        await store.save_recommendations(_list(10, history.fingerprint))
        states.append(await service.key_state(key.user_id, key.category_id, history))
        await store.save_recommendations(_list(60, history.fingerprint))
        states.append(await service.key_state(key.user_id, key.category_id, history))
        await store.save_recommendations(_list(60, "older-history"))
        states.append(await service.key_state(key.user_id, key.category_id, history))

        await store.save_history(history)
        page_task = asyncio.create_task(service.get_page(USER, "movie", "for-you", 0))
        await asyncio.sleep(0.02)
        states.append(await service.key_state(key.user_id, key.category_id, history))
        await page_task
        await scheduler.drain()
        await database.dispose()
        return states

    states = asyncio.run(runner())

    assert states == [
        KeyState.EMPTY,
        KeyState.PARTIAL,
        KeyState.STABLE,
        KeyState.STALE,
        KeyState.GROWING,
    ]


def test_similar_titles_are_cached_per_user(tmp_path) -> None:
    backend = CountingBackend()
    database, _, scheduler, service = _build(tmp_path, StubTrakt(), [backend], SIMILAR_COUNT="5")

    async def runner():
        await database.create_all()
        first = await service.get_similar(USER, "tt0133093", "movie", "The Matrix")
        second = await service.get_similar(USER, "tt0133093", "movie", "The Matrix")
        invalid = await service.get_similar(USER, "not-an-id", "movie")
        await scheduler.drain()
        await database.dispose()
        return first, second, invalid

    first, second, invalid = asyncio.run(runner())

    assert backend.calls == [5]
    assert len(first) == 5
    assert [meta.id for meta in second] == [meta.id for meta in first]
    assert invalid == []


def test_meta_links_point_to_similar_titles(tmp_path) -> None:
    backend = CountingBackend()
    database, _, scheduler, service = _build(tmp_path, StubTrakt(), [backend], SIMILAR_COUNT="3")

    async def runner():
        await database.create_all()
        meta = await service.get_meta(USER, "series", "tt0903747")
        missing = await service.get_meta(USER, "series", "kitsu:1")
        await scheduler.drain()
        await database.dispose()
        return meta, missing

    meta, missing = asyncio.run(runner())

    assert missing is None
    assert meta is not None
    assert meta["id"] == "tt0903747"
    assert meta["name"] == "Loading... (tt0903747)"
    assert [link["url"] for link in meta["links"]] == [
        f"stremio:///detail/series/tt{value:07d}" for value in range(1, 4)
    ]
    assert {link["category"] for link in meta["links"]} == {"Similar"}


def test_meta_without_backends_omits_links(tmp_path) -> None:
    database, _, _, service = _build(tmp_path, StubTrakt(), [])

    async def runner():
        await database.create_all()
        meta = await service.get_meta(USER, "movie", "tt0133093")
        await database.dispose()
        return meta

    meta = asyncio.run(runner())

    assert meta is not None
    assert "links" not in meta


def test_invalidate_user_drops_cached_rows(tmp_path) -> None:
    trakt = StubTrakt([_watched()])
    database, store, scheduler, service = _build(tmp_path, trakt, [CountingBackend()])

    async def runner():
        await database.create_all()
        await service.get_page(USER, "movie", "for-you", 0)
        await scheduler.drain()
        await service.invalidate_user(USER.user_id)
        stats = await store.stats()
        await database.dispose()
        return stats

    stats = asyncio.run(runner())

    assert stats.history_count == 0
    assert stats.recommendation_count == 0


def test_cleanup_loop_starts_and_stops(tmp_path) -> None:
    database, _, _, service = _build(tmp_path, StubTrakt(), [])

    async def runner() -> None:
        await database.create_all()
        await service.start()
        await service.cleanup_expired()
        await service.stop()
        await database.dispose()

    asyncio.run(runner())


class HistoryTaggingBackend:
    """Backend whose ids reveal which history each batch was generated from."""

    name = "tagging"

    def __init__(self, tags: dict[str, str], *, delay: float = 0.0):
        self.tags = tags
        self.delay = delay
        self.calls: list[tuple[str, int]] = []
        self._next = 0

    async def generate(self, history, exclude_ids, count, context) -> GenerationResult:
        tag = self.tags[history[0].content_id]
        self.calls.append((tag, count))
        await asyncio.sleep(self.delay)
        items = [
            Recommendation(content_id=f"tt{tag}{self._next + offset:06d}", title=f"Pick {tag}")
            for offset in range(count)
        ]
        self._next += count
        return GenerationResult(items=items)


def test_request_with_newer_history_is_not_served_older_generation(tmp_path) -> None:
    old_item = _watched()
    new_item = _watched("tt0114369", "Se7en")
    backend = HistoryTaggingBackend(
        {old_item.content_id: "1", new_item.content_id: "2"}, delay=0.1
    )
    database, store, scheduler, service = _build(tmp_path, StubTrakt([old_item]), [backend])
    key = GenerationKey(USER.user_id, "for-you")
    new_history = HistorySnapshot(
        user_id=USER.user_id, items=[new_item, old_item], fetched_at=datetime.utcnow()
    )

    async def runner():
        await database.create_all()
        first_request = asyncio.create_task(service.get_page(USER, "movie", "for-you", 0, 15))
        await asyncio.sleep(0.03)
        await store.save_history(new_history)
        second_page = await service.get_page(USER, "movie", "for-you", 0, 15)
        first_page = await first_request
        await scheduler.drain()
        stored = await store.get_recommendations(key)
        await database.dispose()
        return first_page, second_page, stored

    first_page, second_page, stored = asyncio.run(runner())

    assert all(meta.id.startswith("tt1") for meta in first_page)
    assert len(second_page) == 15
    assert all(meta.id.startswith("tt2") for meta in second_page)
    assert stored is not None
    assert stored.source_fingerprint == new_history.fingerprint
    assert all(item.content_id.startswith("tt2") for item in stored.items)
    assert [count for tag, count in backend.calls if tag == "1"] == [15]
    assert [count for tag, count in backend.calls if tag == "2"][:2] == [15, 45]


def test_history_locks_are_released_after_use(tmp_path) -> None:
    trakt = StubTrakt([_watched()])
    database, _, _, service = _build(tmp_path, trakt, [CountingBackend()])

    async def runner():
        await database.create_all()
        await asyncio.gather(*(service.resolve_history(USER) for _ in range(3)))
        other = UserConfig(traktAccessToken="other-token")
        await service.resolve_history(other)
        await database.dispose()

    asyncio.run(runner())

    assert trakt.history_calls == 2
    assert service._history_locks == {}
    assert service._history_lock_users == {}
