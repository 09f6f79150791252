"""Recommendation categories exposed as catalogs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


ContentType = Literal["movie", "series"]
CONTENT_TYPES: tuple[ContentType, ...] = ("movie", "series")


@dataclass(frozen=True)
class CategoryDefinition:
    """Describes a recommendation lane and how the model should approach it."""

    id: str
    name: str
    description: str
    prompt_focus: str
    types: tuple[ContentType, ...] = ("movie", "series")
    genres: tuple[str, ...] = field(default_factory=tuple)
    year_min: int | None = None
    year_max: int | None = None

    def supports(self, content_type: str) -> bool:
        """Return whether the category produces catalogs for the type."""

        return content_type in self.types


CATEGORIES: tuple[CategoryDefinition, ...] = (
    CategoryDefinition(
        id="for-you",
        name="For You",
        description="Personalized picks based on your watch history",
        prompt_focus=(
            "Analyze the user's complete viewing patterns and recommend titles that "
            "match their psychological profile. Consider themes, pacing, emotional "
            "arcs, and rating patterns. Mix well-known titles with hidden gems."
        ),
    ),
    CategoryDefinition(
        id="new-releases",
        name="New Releases",
        description="Recent releases matching your taste",
        prompt_focus=(
            "Focus ONLY on films/series released in the last 2 years. Match the "
            "user's taste profile but prioritize recent content they likely "
            "haven't seen yet."
        ),
        year_min=2024,
    ),
    CategoryDefinition(
        id="hidden-gems",
        name="Hidden Gems",
        description="Underrated films you probably missed",
        prompt_focus=(
            "Find critically acclaimed but underseen titles (preferably < 100k IMDb "
            "votes). Include international films, indie productions, and festival "
            "favorites that match the user's taste."
        ),
    ),
    CategoryDefinition(
        id="classics",
        name="Classics",
        description="Timeless films from cinema history",
        prompt_focus=(
            "Recommend classic films from before 2000 that match the user's taste. "
            "Include influential cinema, cult classics, and foundational films in "
            "genres they enjoy."
        ),
        types=("movie",),
        year_max=2000,
    ),
    CategoryDefinition(
        id="action-thrillers",
        name="Action & Thrillers",
        description="High-octane action and edge-of-seat thrillers",
        prompt_focus=(
            "Focus on action movies, thrillers, and suspenseful content. Match the "
            "intensity level the user prefers based on their history."
        ),
        genres=("Action", "Thriller"),
    ),
    CategoryDefinition(
        id="sci-fi-fantasy",
        name="Sci-Fi & Fantasy",
        description="Science fiction and fantastical worlds",
        prompt_focus=(
            "Focus on science fiction and fantasy content. Consider whether the user "
            "prefers hard sci-fi, space opera, dystopian, or fantasy subgenres."
        ),
        genres=("Science Fiction", "Sci-Fi", "Fantasy"),
    ),
    CategoryDefinition(
        id="drama",
        name="Drama",
        description="Character-driven stories and emotional journeys",
        prompt_focus=(
            "Focus on dramatic content with strong character development. Match the "
            "emotional depth and themes the user responds to."
        ),
        genres=("Drama",),
    ),
    CategoryDefinition(
        id="comedy",
        name="Comedy",
        description="Laughs and feel-good entertainment",
        prompt_focus=(
            "Focus on comedies and humorous content. Determine if the user prefers "
            "dark comedy, satire, rom-coms, or slapstick based on their history."
        ),
        genres=("Comedy",),
    ),
    CategoryDefinition(
        id="horror-mystery",
        name="Horror & Mystery",
        description="Scary films and puzzling mysteries",
        prompt_focus=(
            "Focus on horror, mystery, and suspense. Gauge the user's tolerance for "
            "intensity based on their history."
        ),
        genres=("Horror", "Mystery", "Thriller"),
    ),
    CategoryDefinition(
        id="documentary",
        name="Documentary",
        description="Real stories and fascinating subjects",
        prompt_focus=(
            "Focus on documentaries and docuseries. Match topics to the interests "
            "inferred from the user's fiction preferences."
        ),
        genres=("Documentary",),
    ),
    CategoryDefinition(
        id="feel-good",
        name="Feel Good",
        description="Uplifting and heartwarming content",
        prompt_focus=(
            "Focus on feel-good, uplifting content with positive endings: inspiring "
            "stories and optimistic narratives."
        ),
    ),
    CategoryDefinition(
        id="mind-benders",
        name="Mind Benders",
        description="Films that challenge your brain",
        prompt_focus=(
            "Focus on intellectually challenging content: complex narratives, twist "
            "endings, philosophical themes, and non-linear storytelling."
        ),
    ),
    CategoryDefinition(
        id="international",
        name="International",
        description="Best of world cinema",
        prompt_focus=(
            "Focus on non-English language films and series. Include critically "
            "acclaimed international cinema that matches the user's taste."
        ),
    ),
    CategoryDefinition(
        id="random",
        name="Surprise Me",
        description="Random picks outside your comfort zone",
        prompt_focus=(
            "Recommend unexpected titles OUTSIDE the user's usual preferences. "
            "Challenge them with genres, eras, or styles they haven't explored."
        ),
    ),
)

# Used by the meta handler rather than listed as its own catalog.
SIMILAR_CATEGORY = CategoryDefinition(
    id="similar",
    name="Similar",
    description="Similar movies and shows",
    prompt_focus=(
        "Find titles that are SIMILAR to the specified movie/show. Consider the same "
        "genres and subgenres, similar themes and tone, comparable pacing and style, "
        "and creators with similar sensibilities. Focus on titles that fans of the "
        "source material would genuinely enjoy."
    ),
)

_CATEGORY_MAP = {category.id: category for category in CATEGORIES}


def get_category(category_id: str) -> CategoryDefinition | None:
    """Return the category with the given identifier, if any."""

    return _CATEGORY_MAP.get(category_id)


def categories_for_type(content_type: str) -> tuple[CategoryDefinition, ...]:
    return tuple(category for category in CATEGORIES if category.supports(content_type))
