"""Generation backend for Google's Gemini generateContent API."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from ..config import Settings
from ..errors import GenerationError
from ..models import GenerationContext, GenerationResult, WatchedItem
from .prompting import build_system_prompt, build_user_prompt, parse_generation_content

logger = logging.getLogger(__name__)


class GeminiBackend:
    """Client responsible for talking to Gemini with an API key."""

    name = "gemini"

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        api_key: str,
        model: str | None = None,
    ):
        self._settings = settings
        self._client = http_client
        self._api_key = api_key
        self.model = model or settings.gemini_model

    async def generate(
        self,
        history: Sequence[WatchedItem],
        exclude_ids: Sequence[str],
        count: int,
        context: GenerationContext,
    ) -> GenerationResult:
        payload = {
            "systemInstruction": {
                "parts": [{"text": build_system_prompt(count, exclude_ids, context)}]
            },
            "contents": [
                {"role": "user", "parts": [{"text": build_user_prompt(history, context)}]}
            ],
            "generationConfig": {
                "temperature": context.temperature,
                "responseMimeType": "application/json",
            },
        }
        try:
            response = await self._client.post(
                f"/models/{self.model}:generateContent",
                params={"key": self._api_key},
                json=payload,
                timeout=self._settings.generation_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise GenerationError(f"Gemini request failed: {exc}", backend=self.name) from exc
        if response.status_code >= 400:
            raise GenerationError(
                f"Gemini API error: {response.status_code} - {response.text}",
                backend=self.name,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError("Gemini returned a non-JSON body", backend=self.name) from exc

        content = self._extract_text(data)
        if not content:
            raise GenerationError("Gemini response missing content", backend=self.name)
        return parse_generation_content(content, backend=self.name)

    @staticmethod
    def _extract_text(data: Any) -> str:
        if not isinstance(data, dict):
            return ""
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(
            part.get("text", "") for part in parts if isinstance(part, dict)
        )
