"""Exception hierarchy shared by the catalog services."""

from __future__ import annotations


class SannsvarError(Exception):
    """Base class for recoverable service failures."""


class ProviderError(SannsvarError):
    """Raised when the watch-history provider cannot be reached or parsed."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationError(SannsvarError):
    """Raised when a generation backend fails or returns unusable output."""

    def __init__(self, message: str, *, backend: str = "unknown"):
        super().__init__(message)
        self.backend = backend


class ConfigurationError(SannsvarError):
    """Raised when no credentials are available for a required collaborator."""
