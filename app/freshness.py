"""Freshness rules for cached history snapshots and recommendation lists.

Recommendation lists are content-addressed: each one remembers the
fingerprint of the history it was generated from, and a list whose
fingerprint no longer matches the current history is treated as empty the
next time it is read. Nothing is purged eagerly.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .models import HistorySnapshot, RecommendationList, WatchedItem

FINGERPRINT_LENGTH = 16


def _epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def history_fingerprint(items: Iterable["WatchedItem"]) -> str:
    """Return a deterministic digest over the ordered (id, watched at) pairs."""

    data = "|".join(
        f"{item.content_id}:{_epoch_millis(item.watched_at)}" for item in items
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def _age(timestamp: datetime, now: datetime | None) -> timedelta:
    reference = now or datetime.utcnow()
    return reference - timestamp


def is_history_fresh(
    snapshot: "HistorySnapshot | None",
    ttl_seconds: int,
    *,
    now: datetime | None = None,
) -> bool:
    """Return whether the snapshot was fetched less than ``ttl_seconds`` ago."""

    if snapshot is None:
        return False
    return _age(snapshot.fetched_at, now) < timedelta(seconds=ttl_seconds)


def is_list_usable(
    recommendations: "RecommendationList | None",
    current_fingerprint: str,
    ttl_seconds: int,
    *,
    now: datetime | None = None,
) -> bool:
    """Return whether a cached list may still be served for the current history."""

    if recommendations is None:
        return False
    if _age(recommendations.updated_at, now) >= timedelta(seconds=ttl_seconds):
        return False
    return recommendations.source_fingerprint == current_fingerprint
