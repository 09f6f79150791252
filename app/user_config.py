"""Per-user configuration carried in the addon URL."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class UserConfig(BaseModel):
    """Credentials and preferences decoded from the URL config segment."""

    model_config = ConfigDict(populate_by_name=True)

    trakt_access_token: str = Field(
        validation_alias=AliasChoices("traktAccessToken", "trakt_access_token"),
        serialization_alias="traktAccessToken",
        min_length=1,
    )
    trakt_refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("traktRefreshToken", "trakt_refresh_token"),
        serialization_alias="traktRefreshToken",
    )
    openrouter_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("openrouterKey", "openRouterKey", "openrouter_api_key"),
        serialization_alias="openrouterKey",
    )
    openrouter_model: str | None = Field(
        default=None,
        validation_alias=AliasChoices("openrouterModel", "openrouter_model"),
        serialization_alias="openrouterModel",
    )
    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("openaiKey", "openAIKey", "openai_api_key"),
        serialization_alias="openaiKey",
    )
    gemini_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("geminiApiKey", "gemini_api_key"),
        serialization_alias="geminiApiKey",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    @field_validator(
        "trakt_refresh_token",
        "openrouter_api_key",
        "openrouter_model",
        "openai_api_key",
        "gemini_api_key",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @property
    def user_id(self) -> str:
        """Stable cache identifier that never exposes the raw Trakt token."""

        digest = hashlib.sha256(self.trakt_access_token.encode("utf-8")).hexdigest()
        return f"user-{digest[:16]}"

    @classmethod
    def decode(cls, encoded: str) -> "UserConfig":
        """Decode a URL-safe base64 JSON token.

        Raises ``ValueError`` (or a pydantic ``ValidationError``, which is a
        subclass) when the token is malformed.
        """

        padded = encoded + "=" * (-len(encoded) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            data = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Failed to decode config: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Failed to decode config: expected a JSON object")
        return cls.model_validate(data)

    def encode(self) -> str:
        payload = self.model_dump(by_alias=True, exclude_none=True)
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
