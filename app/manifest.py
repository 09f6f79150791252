"""Addon manifest advertised to catalog clients."""

from __future__ import annotations

from typing import Any

from .categories import CONTENT_TYPES, categories_for_type
from .config import Settings

MANIFEST_ID = "com.sannsvar"
MANIFEST_VERSION = "2.0.0"


def build_catalog_entries() -> list[dict[str, Any]]:
    """Return one paginated catalog per category and supported type."""

    entries: list[dict[str, Any]] = []
    for content_type in CONTENT_TYPES:
        for category in categories_for_type(content_type):
            entries.append(
                {
                    "type": content_type,
                    "id": category.id,
                    "name": category.name,
                    "extra": [{"name": "skip"}],
                }
            )
    return entries


def build_manifest(settings: Settings, *, configured: bool = False) -> dict[str, Any]:
    return {
        "id": MANIFEST_ID,
        "version": MANIFEST_VERSION,
        "name": settings.app_name,
        "description": (
            "AI-powered movie and series recommendations generated from your "
            "Trakt watch history."
        ),
        "catalogs": build_catalog_entries(),
        "resources": [
            "catalog",
            {"name": "meta", "types": list(CONTENT_TYPES), "idPrefixes": ["tt"]},
        ],
        "types": list(CONTENT_TYPES),
        "idPrefixes": ["tt"],
        "behaviorHints": {
            "configurable": True,
            "configurationRequired": not configured,
        },
    }
