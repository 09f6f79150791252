"""Watch-history provider backed by the Trakt API."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import ConfigurationError, ProviderError
from ..models import WatchedItem

logger = logging.getLogger(__name__)


def _backoff_delay(attempt: int) -> float:
    return min(2 ** (attempt - 1), 5) + (0.1 * attempt)


class TraktClient:
    """Thin wrapper around the Trakt HTTP API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._max_retries = 3

    def _headers(self, access_token: str) -> dict[str, str]:
        headers = {
            "trakt-api-version": "2",
            "User-Agent": f"{self._settings.app_name} (sannsvar)",
            "Authorization": f"Bearer {access_token}",
        }
        if self._settings.trakt_client_id:
            headers["trakt-api-key"] = self._settings.trakt_client_id
        return headers

    async def _get_json(self, path: str, access_token: str, **params: Any) -> Any:
        """GET a Trakt endpoint, retrying timeouts and 5xx responses."""

        attempt = 0
        while True:
            try:
                response = await self._client.get(
                    path, headers=self._headers(access_token), params=params or None
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = _backoff_delay(attempt)
                    logger.info(
                        "Transient error talking to Trakt (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise ProviderError(f"Unable to reach Trakt: {exc}") from exc

            if 500 <= response.status_code < 600:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = _backoff_delay(attempt)
                    logger.info(
                        "Trakt 5xx for %s. Retrying in %.1fs", path, backoff
                    )
                    await asyncio.sleep(backoff)
                    continue
            break

        if response.status_code >= 400:
            raise ProviderError(
                f"Trakt returned {response.status_code} for {path}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"Unexpected non-JSON Trakt response for {path}") from exc

    async def fetch_history(
        self, access_token: str, *, limit: int | None = None
    ) -> list[WatchedItem]:
        """Return watched movies and shows, most recent first.

        Titles without an IMDb identifier are skipped because recommendations
        and exclusions are keyed by IMDb id.
        """

        if not self._settings.trakt_client_id:
            raise ConfigurationError("Trakt credentials not configured")

        tasks = [
            asyncio.create_task(
                self._get_json("/sync/watched/movies", access_token, extended="full")
            ),
            asyncio.create_task(
                self._get_json("/sync/watched/shows", access_token, extended="full")
            ),
            asyncio.create_task(self._get_json("/sync/ratings/movies", access_token)),
            asyncio.create_task(self._get_json("/sync/ratings/shows", access_token)),
        ]
        try:
            watched_movies, watched_shows, rated_movies, rated_shows = await asyncio.gather(
                *tasks
            )
        except BaseException:
            # One failed request fails the whole fetch; stop the others.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        movie_ratings = self._ratings_by_imdb(rated_movies, key="movie")
        show_ratings = self._ratings_by_imdb(rated_shows, key="show")

        history: list[WatchedItem] = []
        history.extend(self._map_watched(watched_movies, key="movie", ratings=movie_ratings))
        history.extend(self._map_watched(watched_shows, key="show", ratings=show_ratings))
        history.sort(key=lambda item: item.watched_at, reverse=True)

        resolved_limit = limit if limit is not None else self._settings.trakt_history_limit
        return history[:resolved_limit]

    async def fetch_username(self, access_token: str) -> str | None:
        """Return the Trakt username, or ``None`` when it cannot be resolved."""

        try:
            data = await self._get_json("/users/me", access_token)
        except ProviderError as exc:
            logger.info("Failed to fetch Trakt user profile: %s", exc)
            return None
        if not isinstance(data, dict):
            return None
        username = data.get("username")
        return username if isinstance(username, str) and username else None

    @staticmethod
    def _ratings_by_imdb(data: Any, *, key: str) -> dict[str, int]:
        ratings: dict[str, int] = {}
        if not isinstance(data, list):
            return ratings
        for entry in data:
            if not isinstance(entry, dict):
                continue
            media = entry.get(key)
            rating = entry.get("rating")
            if not isinstance(media, dict) or not isinstance(rating, int):
                continue
            imdb_id = (media.get("ids") or {}).get("imdb")
            if isinstance(imdb_id, str) and imdb_id:
                ratings[imdb_id] = rating
        return ratings

    @staticmethod
    def _map_watched(
        data: Any, *, key: str, ratings: dict[str, int]
    ) -> list[WatchedItem]:
        if not isinstance(data, list):
            logger.warning("Unexpected Trakt response structure for watched %ss", key)
            return []

        items: list[WatchedItem] = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            media = entry.get(key)
            if not isinstance(media, dict):
                continue
            imdb_id = (media.get("ids") or {}).get("imdb")
            if not imdb_id:
                continue
            watched_at = entry.get("last_watched_at")
            if not isinstance(watched_at, str):
                continue
            try:
                item = WatchedItem(
                    content_id=imdb_id,
                    title=media.get("title") or imdb_id,
                    year=media.get("year"),
                    kind=key,
                    tags=[g for g in (media.get("genres") or []) if isinstance(g, str)],
                    rating=ratings.get(imdb_id),
                    watched_at=datetime.fromisoformat(watched_at.replace("Z", "+00:00")),
                    runtime=media.get("runtime"),
                    certification=media.get("certification"),
                )
            except (ValidationError, ValueError):
                logger.debug("Skipping malformed Trakt entry %s", imdb_id)
                continue
            items.append(item)
        return items
