"""Tests for the SQLite-backed cache store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from sqlalchemy import update

from app.database import Database
from app.db_models import RecommendationListRecord
from app.models import (
    GenerationKey,
    HistorySnapshot,
    Recommendation,
    RecommendationList,
    WatchedItem,
)
from app.services.cache_store import CacheStore


def _recommendations(*ids: str) -> list[Recommendation]:
    return [
        Recommendation(content_id=content_id, title=f"Title {content_id}")
        for content_id in ids
    ]


def _snapshot(user_id: str = "user-1", *, fetched_at: datetime | None = None) -> HistorySnapshot:
    return HistorySnapshot(
        user_id=user_id,
        items=[
            WatchedItem(
                content_id="tt0111161",
                title="The Shawshank Redemption",
                year=1994,
                tags=["drama"],
                rating=10,
                watched_at=datetime(2024, 3, 1, 20, 0),
            )
        ],
        fetched_at=fetched_at or datetime.utcnow(),
    )


def test_history_round_trip_and_replace(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    store = CacheStore(database.session_factory)

    async def runner() -> None:
        await database.create_all()
        assert await store.get_history("user-1") is None

        snapshot = _snapshot()
        await store.save_history(snapshot, trakt_username="viewer")
        loaded = await store.get_history("user-1")
        assert loaded is not None
        assert [item.content_id for item in loaded.items] == ["tt0111161"]
        assert loaded.items[0].rating == 10
        assert loaded.fingerprint == snapshot.fingerprint

        emptied = HistorySnapshot(user_id="user-1", items=[], fetched_at=datetime.utcnow())
        await store.save_history(emptied)
        reloaded = await store.get_history("user-1")
        assert reloaded is not None and reloaded.is_empty()

        stats = await store.stats()
        assert stats.history_count == 1

        await store.invalidate_history("user-1")
        assert await store.get_history("user-1") is None
        await database.dispose()

    asyncio.run(runner())


def test_recommendations_upsert_replaces_whole_row(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    store = CacheStore(database.session_factory)
    key = GenerationKey("user-1", "for-you")

    async def runner() -> None:
        await database.create_all()
        first = RecommendationList(
            user_id=key.user_id,
            category_id=key.category_id,
            items=_recommendations("tt0000001", "tt0000002"),
            source_fingerprint="fp-1",
            updated_at=datetime.utcnow(),
            summary="Likes slow-burn dramas",
        )
        await store.save_recommendations(first)

        second = first.model_copy(
            update={
                "items": _recommendations("tt0000001", "tt0000002", "tt0000003"),
                "source_fingerprint": "fp-2",
                "summary": None,
            }
        )
        await store.save_recommendations(second)

        loaded = await store.get_recommendations(key)
        assert loaded is not None
        assert [item.content_id for item in loaded.items] == [
            "tt0000001",
            "tt0000002",
            "tt0000003",
        ]
        assert loaded.source_fingerprint == "fp-2"
        # A batch without a summary keeps the previous analysis.
        assert loaded.summary == "Likes slow-burn dramas"

        stats = await store.stats()
        assert stats.recommendation_count == 1
        assert await store.get_recommendations(GenerationKey("user-1", "drama")) is None
        await database.dispose()

    asyncio.run(runner())


def test_invalidate_recommendations_by_category(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    store = CacheStore(database.session_factory)

    async def runner() -> None:
        await database.create_all()
        for category_id in ("for-you", "drama"):
            await store.save_recommendations(
                RecommendationList(
                    user_id="user-1",
                    category_id=category_id,
                    items=_recommendations("tt0000001"),
                    source_fingerprint="fp",
                    updated_at=datetime.utcnow(),
                )
            )

        await store.invalidate_recommendations("user-1", "drama")
        assert await store.get_recommendations(GenerationKey("user-1", "drama")) is None
        assert await store.get_recommendations(GenerationKey("user-1", "for-you")) is not None

        await store.invalidate_recommendations("user-1")
        assert (await store.stats()).recommendation_count == 0
        await database.dispose()

    asyncio.run(runner())


def test_cleanup_expired_removes_old_rows(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    store = CacheStore(database.session_factory)
    now = datetime.utcnow()

    async def runner() -> None:
        await database.create_all()
        await store.save_history(_snapshot("old-user", fetched_at=now - timedelta(hours=3)))
        await store.save_history(_snapshot("new-user", fetched_at=now))
        await store.save_recommendations(
            RecommendationList(
                user_id="old-user",
                category_id="for-you",
                items=_recommendations("tt0000001"),
                source_fingerprint="fp",
                updated_at=now - timedelta(hours=5),
            )
        )
        await store.save_recommendations(
            RecommendationList(
                user_id="new-user",
                category_id="for-you",
                items=_recommendations("tt0000002"),
                source_fingerprint="fp",
                updated_at=now,
            )
        )

        stats = await store.cleanup_expired(
            history_ttl_seconds=3_600, recommendation_ttl_seconds=14_400
        )
        assert stats.history_deleted == 1
        assert stats.recommendations_deleted == 1
        assert await store.get_history("old-user") is None
        assert await store.get_history("new-user") is not None
        await database.dispose()

    asyncio.run(runner())


def test_unreadable_rows_are_reported_missing(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    store = CacheStore(database.session_factory)
    key = GenerationKey("user-1", "for-you")

    async def runner() -> None:
        await database.create_all()
        await store.save_recommendations(
            RecommendationList(
                user_id=key.user_id,
                category_id=key.category_id,
                items=_recommendations("tt0000001"),
                source_fingerprint="fp",
                updated_at=datetime.utcnow(),
            )
        )
        async with database.session() as session:
            await session.execute(
                update(RecommendationListRecord).values(items=[{"unexpected": True}])
            )
            await session.commit()

        assert await store.get_recommendations(key) is None
        await database.dispose()

    asyncio.run(runner())
