"""
Error taxonomy shared by the API clients and the request scheduler.
"""

from __future__ import annotations

from typing import Optional


class ProviderError(Exception):
    """Base exception for failures coming from an external provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Raised when a provider call fails for a reason other than quota."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        reset_time: Optional[float] = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code)
        self.reset_time = reset_time  # Unix timestamp hint sent with a 429
        self.response_text = response_text


class QuotaExceededError(ProviderError):
    """Raised by the scheduler once a failure is classified as a rate limit."""

    def __init__(self, endpoint: str, reset_time: float, message: str = "API rate limit exceeded"):
        super().__init__(message, status_code=429)
        self.endpoint = endpoint
        self.reset_time = reset_time  # Unix timestamp when the quota should be available again

    def __str__(self) -> str:
        return f"{self.args[0]} (endpoint={self.endpoint}, reset_time={self.reset_time:.0f})"


class EnrichmentUnavailableError(ProviderError):
    """Raised when a market-data lookup cannot produce a usable payload."""


__all__ = [
    "ProviderError",
    "TransientProviderError",
    "QuotaExceededError",
    "EnrichmentUnavailableError",
]
