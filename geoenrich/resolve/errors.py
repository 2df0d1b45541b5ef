"""Error types raised while resolving IP addresses to locations."""
from __future__ import annotations

from typing import Optional


class GeoEnrichError(Exception):
    """Base error for the geolocation enrichment package."""


class ProviderError(GeoEnrichError):
    """Raised when a single geolocation provider cannot answer a lookup."""

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code


class ConfigurationError(ProviderError):
    """Raised when a provider is not configured to serve the request."""
