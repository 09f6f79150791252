"""Pydantic models describing history, recommendations and catalog payloads."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, NamedTuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .categories import CategoryDefinition, ContentType
from .freshness import history_fingerprint

HistoryKind = Literal["movie", "show"]

PLACEHOLDER_ID = "error"
PLACEHOLDER_NAME = "Configuration Required"


class WatchedItem(BaseModel):
    """A single title from the user's watch history."""

    model_config = ConfigDict(populate_by_name=True)

    content_id: str = Field(validation_alias=AliasChoices("content_id", "imdbId"))
    title: str
    year: int | None = None
    kind: HistoryKind = Field(
        default="movie", validation_alias=AliasChoices("kind", "type")
    )
    tags: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("tags", "genres")
    )
    rating: int | None = Field(default=None, ge=1, le=10)
    watched_at: datetime = Field(
        validation_alias=AliasChoices("watched_at", "watchedAt")
    )
    runtime: int | None = None
    certification: str | None = None


class HistorySnapshot(BaseModel):
    """Most recently fetched watch history for a user."""

    user_id: str
    items: list[WatchedItem] = Field(default_factory=list)
    fetched_at: datetime

    @property
    def fingerprint(self) -> str:
        return history_fingerprint(self.items)

    def is_empty(self) -> bool:
        return not self.items


class Recommendation(BaseModel):
    """A generated recommendation with the model's justification."""

    model_config = ConfigDict(populate_by_name=True)

    content_id: str = Field(
        validation_alias=AliasChoices("content_id", "imdbId", "imdb_id", "id")
    )
    title: str = Field(validation_alias=AliasChoices("title", "name"))
    justification: str = Field(
        default="Recommended based on your watch history",
        validation_alias=AliasChoices("justification", "reason", "description"),
    )

    @field_validator("content_id", "title", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class RecommendationList(BaseModel):
    """Accumulated recommendations for one (user, category) pair."""

    user_id: str
    category_id: str
    items: list[Recommendation] = Field(default_factory=list)
    source_fingerprint: str
    updated_at: datetime
    summary: str | None = None

    def content_ids(self) -> set[str]:
        return {item.content_id for item in self.items}

    def __len__(self) -> int:
        return len(self.items)


class GenerationResult(BaseModel):
    """Parsed response of a generation backend call."""

    items: list[Recommendation] = Field(default_factory=list)
    summary: str | None = None


class GenerationKey(NamedTuple):
    """Coordination unit for single-flight generation."""

    user_id: str
    category_id: str

    @classmethod
    def similar(cls, user_id: str, content_id: str) -> "GenerationKey":
        return cls(user_id, f"similar:{content_id}")

    @property
    def label(self) -> str:
        return f"{self.user_id[:8]}:{self.category_id}"


@dataclass(frozen=True)
class SimilarSeed:
    """Source title of a "similar to X" request."""

    content_id: str
    title: str
    content_type: ContentType


@dataclass(frozen=True)
class GenerationContext:
    """Category and seed information handed to a generation backend."""

    category: CategoryDefinition
    content_type: ContentType = "movie"
    similar_to: SimilarSeed | None = None
    temperature: float = 0.7


class CatalogMeta(BaseModel):
    """Entry of a catalog page as the client expects it."""

    id: str
    type: ContentType
    name: str
    description: str | None = None

    @classmethod
    def from_recommendation(
        cls, recommendation: Recommendation, content_type: ContentType
    ) -> "CatalogMeta":
        return cls(
            id=recommendation.content_id,
            type=content_type,
            name=recommendation.title,
            description=recommendation.justification,
        )

    def is_placeholder(self) -> bool:
        return self.id == PLACEHOLDER_ID

    def to_payload(self) -> dict[str, object]:
        return self.model_dump(exclude_none=True)


def placeholder_meta(message: str, content_type: ContentType = "movie") -> CatalogMeta:
    """Return the single sentinel entry used to surface an actionable problem."""

    return CatalogMeta(
        id=PLACEHOLDER_ID,
        type=content_type,
        name=PLACEHOLDER_NAME,
        description=message,
    )
