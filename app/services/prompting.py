"""Prompt construction and response parsing shared by generation backends."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Protocol, Sequence

from pydantic import ValidationError

from ..errors import GenerationError
from ..models import GenerationContext, GenerationResult, Recommendation, WatchedItem
from ..utils import extract_json_object, is_imdb_id

logger = logging.getLogger(__name__)

HISTORY_PROMPT_LIMIT = 25
EXCLUSION_PROMPT_LIMIT = 300


class GenerationBackend(Protocol):
    """Anything able to turn a watch history into new recommendations."""

    name: str

    async def generate(
        self,
        history: Sequence[WatchedItem],
        exclude_ids: Sequence[str],
        count: int,
        context: GenerationContext,
    ) -> GenerationResult:
        ...


SYSTEM_PROMPT_TEMPLATE = """You are an expert film and television recommendation engine.

## Task
{task}

## Focus
{focus}{constraints}

## Output Format
Return ONLY valid JSON (no markdown, no explanation):
{{
  "recommendations": [
    {{
      "imdbId": "tt1234567",
      "title": "Title",
      "reason": "One sentence explaining why it fits"
    }}
  ],
  "analysis": "Short summary of the viewer's taste"
}}

## Rules
- Exactly {count} recommendations
- Only {content_label}
- Valid IMDb IDs (tt followed by 7-9 digits) for real, released productions
- Never repeat a title within the list
- Never recommend anything the viewer has already watched{exclusions}"""


def build_system_prompt(
    count: int,
    exclude_ids: Sequence[str],
    context: GenerationContext,
) -> str:
    category = context.category
    content_label = "movies" if context.content_type == "movie" else "series"
    if context.similar_to is not None:
        seed = context.similar_to
        task = (
            f'Recommend {count} {content_label} similar to "{seed.title}" '
            f"({seed.content_id})."
        )
    else:
        task = (
            f"Analyze the viewer's watch history and recommend {count} {content_label} "
            "they would enjoy."
        )

    constraint_lines: list[str] = []
    if category.genres:
        constraint_lines.append(f"- Preferred genres: {', '.join(category.genres)}")
    if category.year_min is not None:
        constraint_lines.append(f"- Released in {category.year_min} or later")
    if category.year_max is not None:
        constraint_lines.append(f"- Released in {category.year_max} or earlier")
    constraints = ""
    if constraint_lines:
        constraints = "\n\n## Constraints\n" + "\n".join(constraint_lines)

    exclusions = ""
    if exclude_ids:
        listed = list(exclude_ids)[-EXCLUSION_PROMPT_LIMIT:]
        exclusions = (
            "\n\n## Exclusions\nDo NOT recommend these IMDb IDs: " + ", ".join(listed)
        )

    return SYSTEM_PROMPT_TEMPLATE.format(
        task=task,
        focus=category.prompt_focus,
        constraints=constraints,
        count=count,
        content_label=content_label,
        exclusions=exclusions,
    )


def build_user_prompt(
    history: Sequence[WatchedItem], context: GenerationContext
) -> str:
    if context.similar_to is not None:
        seed = context.similar_to
        return (
            f'## Source Title\n"{seed.title}" ({seed.content_id}), a '
            f"{'movie' if seed.content_type == 'movie' else 'series'}."
        )
    if not history:
        return "No watch history. Recommend popular, critically acclaimed titles."

    lines = []
    for item in list(history)[:HISTORY_PROMPT_LIMIT]:
        year = f" ({item.year})" if item.year else ""
        tags = f" [{', '.join(item.tags)}]" if item.tags else ""
        rating = f" ({item.rating}/10)" if item.rating else ""
        lines.append(f"- {item.title}{year}{tags}{rating}")
    return (
        f"## Watch History ({len(history)} items, {summarize_history(history)})\n"
        + "\n".join(lines)
    )


def summarize_history(history: Sequence[WatchedItem]) -> str:
    """Return a one-line description of the history for prompts and logs."""

    movies = sum(1 for item in history if item.kind == "movie")
    shows = sum(1 for item in history if item.kind == "show")
    rated = sum(1 for item in history if item.rating is not None)
    genres: Counter[str] = Counter()
    for item in history:
        genres.update(item.tags)
    top = ", ".join(genre for genre, _ in genres.most_common(5)) or "unknown"
    return f"{movies} movies, {shows} shows, {rated} rated. Top genres: {top}"


def parse_generation_content(content: str, *, backend: str) -> GenerationResult:
    """Turn raw model text into a :class:`GenerationResult`.

    Entries without a valid IMDb id or title are dropped. Output that holds
    no JSON object at all raises :class:`GenerationError`.
    """

    try:
        parsed = extract_json_object(content)
    except ValueError as exc:
        raise GenerationError(str(exc), backend=backend) from exc

    raw_items: list[Any] = []
    for field in ("recommendations", "items"):
        candidate = parsed.get(field)
        if isinstance(candidate, list):
            raw_items = candidate
            break

    items: list[Recommendation] = []
    seen: set[str] = set()
    for entry in raw_items:
        if not isinstance(entry, dict):
            continue
        try:
            item = Recommendation.model_validate(entry)
        except ValidationError:
            continue
        if not item.title or not is_imdb_id(item.content_id):
            continue
        if item.content_id in seen:
            continue
        seen.add(item.content_id)
        items.append(item)

    if len(items) < len(raw_items):
        logger.debug(
            "%s returned %s unusable entries", backend, len(raw_items) - len(items)
        )

    summary = parsed.get("analysis") or parsed.get("summary")
    return GenerationResult(
        items=items, summary=str(summary) if isinstance(summary, str) else None
    )
