"""Utility helpers for the Sannsvar service."""

from __future__ import annotations

import json
import re
from typing import Any


JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)
REASONING_RE = re.compile(
    r"<(think|reasoning)>.*?</\1>", re.DOTALL | re.IGNORECASE
)
IMDB_ID_RE = re.compile(r"^tt\d{7,9}$")
IMDB_ID_SEARCH_RE = re.compile(r"\btt\d{7,9}\b")


def strip_reasoning(content: str) -> str:
    """Drop <think>/<reasoning> blocks emitted by reasoning models."""

    return REASONING_RE.sub("", content).strip()


def extract_json_object(content: str) -> dict[str, Any]:
    """Extract and parse the first JSON object from the model response."""

    content = strip_reasoning(content)
    match = JSON_BLOCK_RE.search(content)
    if match:
        payload = match.group(1)
    else:
        match = BARE_JSON_RE.search(content)
        if not match:
            raise ValueError("No JSON object found in response")
        payload = match.group(0)

    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid JSON payload produced by the model") from exc


def is_imdb_id(value: object) -> bool:
    return isinstance(value, str) and bool(IMDB_ID_RE.match(value))


def find_imdb_ids(content: str) -> list[str]:
    """Return unique IMDb identifiers in order of appearance."""

    seen: list[str] = []
    for match in IMDB_ID_SEARCH_RE.findall(content):
        if match not in seen:
            seen.append(match)
    return seen


def parse_skip(extra: str | None) -> int:
    """Parse the ``skip`` value from a ``key=value&key=value`` extra segment."""

    if not extra:
        return 0
    for part in extra.split("&"):
        key, _, value = part.partition("=")
        if key != "skip":
            continue
        try:
            skip = int(value)
        except ValueError:
            return 0
        return max(skip, 0)
    return 0
