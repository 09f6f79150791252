"""Generation backend for OpenAI's /chat/completions endpoint (direct).

Mirrors :class:`OpenRouterBackend` so the coordinator can rotate between
engines without branching call sites.
"""

from __future__ import annotations

import logging
from typing import Sequence

import httpx

from ..config import Settings
from ..errors import GenerationError
from ..models import GenerationContext, GenerationResult, WatchedItem
from .prompting import build_system_prompt, build_user_prompt, parse_generation_content

logger = logging.getLogger(__name__)


class OpenAIBackend:
    """Client responsible for talking to OpenAI."""

    name = "openai"

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
        self.model = model or settings.openai_model

    async def generate(
        self,
        history: Sequence[WatchedItem],
        exclude_ids: Sequence[str],
        count: int,
        context: GenerationContext,
    ) -> GenerationResult:
        payload = {
            "model": self.model,
            "temperature": context.temperature,
            "max_tokens": max(2_000, min(12_000, 1_200 + int(count) * 60)),
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": build_system_prompt(count, exclude_ids, context),
                },
                {"role": "user", "content": build_user_prompt(history, context)},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(
                "/chat/completions",
                json=payload,
                headers=headers,
                timeout=self._settings.generation_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise GenerationError(f"OpenAI request failed: {exc}", backend=self.name) from exc
        if response.status_code >= 400:
            raise GenerationError(
                f"OpenAI API error: {response.status_code} - {response.text}",
                backend=self.name,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError("OpenAI returned a non-JSON body", backend=self.name) from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise GenerationError("Model returned no choices", backend=self.name)
        message = choices[0].get("message", {})
        content = message.get("content")
        if not isinstance(content, str):
            raise GenerationError("Model response missing content", backend=self.name)

        return parse_generation_content(content, backend=self.name)
