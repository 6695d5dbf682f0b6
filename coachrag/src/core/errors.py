"""Exception taxonomy for coachrag."""

from __future__ import annotations

__all__ = [
    "CoachRAGError",
    "ConfigurationError",
    "ProviderError",
]


class CoachRAGError(Exception):
    """Base exception for all coachrag errors."""


class ConfigurationError(CoachRAGError):
    """The deployment payload could not be fetched or a required credential is missing."""


class ProviderError(CoachRAGError):
    """An embedding or generation provider returned no usable result."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
