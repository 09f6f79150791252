"""Durable storage for history snapshots and recommendation lists."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import HistorySnapshotRecord, RecommendationListRecord
from ..models import (
    GenerationKey,
    HistorySnapshot,
    Recommendation,
    RecommendationList,
    WatchedItem,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupStats:
    """Number of rows removed by :meth:`CacheStore.cleanup_expired`."""

    history_deleted: int = 0
    recommendations_deleted: int = 0


@dataclass(slots=True)
class CacheStats:
    history_count: int = 0
    recommendation_count: int = 0


class CacheStore:
    """Persists the two record kinds the catalog core depends on.

    Every write replaces a single row wholesale, so a reader never observes a
    partially merged recommendation list. Rows that fail to deserialise are
    reported as missing rather than raising.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_history(self, user_id: str) -> HistorySnapshot | None:
        async with self._session_factory() as session:
            record = await session.get(HistorySnapshotRecord, user_id)
            if record is None:
                return None
            try:
                items = [WatchedItem.model_validate(entry) for entry in record.items or []]
            except ValidationError:
                logger.warning("Discarding unreadable history snapshot for %s", user_id[:8])
                return None
            return HistorySnapshot(
                user_id=record.user_id, items=items, fetched_at=record.fetched_at
            )

    async def save_history(
        self, snapshot: HistorySnapshot, *, trakt_username: str | None = None
    ) -> None:
        """Replace the stored snapshot for the user."""

        now = datetime.utcnow()
        payload = [item.model_dump(mode="json") for item in snapshot.items]
        async with self._session_factory() as session:
            record = await session.get(HistorySnapshotRecord, snapshot.user_id)
            if record is None:
                record = HistorySnapshotRecord(
                    user_id=snapshot.user_id,
                    created_at=now,
                )
                session.add(record)
            record.items = payload
            record.fingerprint = snapshot.fingerprint
            record.item_count = len(snapshot.items)
            record.fetched_at = snapshot.fetched_at
            record.updated_at = now
            if trakt_username is not None:
                record.trakt_username = trakt_username
            await session.commit()

    async def invalidate_history(self, user_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(HistorySnapshotRecord).where(
                    HistorySnapshotRecord.user_id == user_id
                )
            )
            await session.commit()

    async def get_recommendations(
        self, key: GenerationKey
    ) -> RecommendationList | None:
        async with self._session_factory() as session:
            record = await self._load_list_record(session, key)
            if record is None:
                return None
            try:
                items = [
                    Recommendation.model_validate(entry) for entry in record.items or []
                ]
            except ValidationError:
                logger.warning("Discarding unreadable recommendation list %s", key.label)
                return None
            return RecommendationList(
                user_id=record.user_id,
                category_id=record.category_id,
                items=items,
                source_fingerprint=record.source_fingerprint,
                updated_at=record.updated_at,
                summary=record.summary,
            )

    async def save_recommendations(self, recommendations: RecommendationList) -> None:
        """Upsert the full list along with its fingerprint and timestamp."""

        key = GenerationKey(recommendations.user_id, recommendations.category_id)
        payload = [item.model_dump(mode="json") for item in recommendations.items]
        async with self._session_factory() as session:
            record = await self._load_list_record(session, key)
            if record is None:
                record = RecommendationListRecord(
                    user_id=key.user_id,
                    category_id=key.category_id,
                    created_at=datetime.utcnow(),
                )
                session.add(record)
            record.items = payload
            record.source_fingerprint = recommendations.source_fingerprint
            record.updated_at = recommendations.updated_at
            if recommendations.summary is not None:
                record.summary = recommendations.summary
            await session.commit()

    async def invalidate_recommendations(
        self, user_id: str, category_id: str | None = None
    ) -> None:
        stmt = delete(RecommendationListRecord).where(
            RecommendationListRecord.user_id == user_id
        )
        if category_id is not None:
            stmt = stmt.where(RecommendationListRecord.category_id == category_id)
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def cleanup_expired(
        self, *, history_ttl_seconds: int, recommendation_ttl_seconds: int
    ) -> CleanupStats:
        """Delete rows older than their TTL."""

        now = datetime.utcnow()
        history_cutoff = now - timedelta(seconds=history_ttl_seconds)
        recommendation_cutoff = now - timedelta(seconds=recommendation_ttl_seconds)
        async with self._session_factory() as session:
            history_result = await session.execute(
                delete(HistorySnapshotRecord).where(
                    HistorySnapshotRecord.fetched_at < history_cutoff
                )
            )
            recommendation_result = await session.execute(
                delete(RecommendationListRecord).where(
                    RecommendationListRecord.updated_at < recommendation_cutoff
                )
            )
            await session.commit()
        return CleanupStats(
            history_deleted=history_result.rowcount or 0,
            recommendations_deleted=recommendation_result.rowcount or 0,
        )

    async def stats(self) -> CacheStats:
        async with self._session_factory() as session:
            history_count = await session.scalar(
                select(func.count()).select_from(HistorySnapshotRecord)
            )
            recommendation_count = await session.scalar(
                select(func.count()).select_from(RecommendationListRecord)
            )
        return CacheStats(
            history_count=history_count or 0,
            recommendation_count=recommendation_count or 0,
        )

    @staticmethod
    async def _load_list_record(
        session: AsyncSession, key: GenerationKey
    ) -> RecommendationListRecord | None:
        stmt = select(RecommendationListRecord).where(
            RecommendationListRecord.user_id == key.user_id,
            RecommendationListRecord.category_id == key.category_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
