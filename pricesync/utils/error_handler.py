"""
Exception hierarchy for the price sync pipeline.

Exceptions mark failures at component seams (transport, catalog preconditions,
storage). Per-printing data problems are reported as typed failure values
instead, see ``pricesync.core.types.BackfillFailure``.
"""

from typing import Any, Dict, Optional


class PricesyncError(Exception):
    """Base exception class for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PricesyncError):
    """Raised when there are configuration or environment variable issues."""
    pass


class ProviderError(PricesyncError):
    """Raised when the price provider cannot be reached or misbehaves."""
    pass


class NetworkError(ProviderError):
    """Raised when network requests fail after all retries."""
    pass


class RetryableStatusError(ProviderError):
    """Raised by the transport for HTTP statuses worth retrying (429, 5xx)."""

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"HTTP {status}", details={"status": status})
        self.status = status


class PreconditionError(PricesyncError):
    """Raised when the internal catalog is missing rows the run depends on."""
    pass


class StoreError(PricesyncError):
    """Raised when storage operations fail outside batched writes."""
    pass
