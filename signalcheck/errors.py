"""Error taxonomy shared by the exchange client, analytics and cache layers."""

from typing import Optional


class MarketDataError(Exception):
    """The exchange returned a non-success response.

    Args:
        message: Human-readable description.
        status_code: HTTP status code, if the failure came from a response.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(MarketDataError):
    """Rate limit or transport failure that survived the single retry."""


class FatalAccessError(MarketDataError):
    """Access revoked by the exchange (HTTP 418 IP ban). Never retried."""


class InsufficientDataError(ValueError):
    """Fewer samples than the requested indicator period needs."""


class CacheWriteFailure(Exception):
    """A cache entry could not be persisted."""


class CacheQuotaExceeded(CacheWriteFailure):
    """The cache store is full."""
