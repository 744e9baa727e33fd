"""
Error Taxonomy
==============

Exceptions raised by the ingestion pipeline.

Only setup failures (missing configuration, no database) are fatal to a
batch. Everything else is caught per item by the batch jobs, logged, and
the job moves on to the next item.
"""

from __future__ import annotations


class CatalogError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(CatalogError):
    """Raised when a source, parser, or setting is missing or malformed."""


class FetchError(CatalogError):
    """Base class for network fetch failures."""

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientFetchError(FetchError):
    """A failure that may succeed on retry (connection error, 408/429/5xx)."""


class PermanentFetchError(FetchError):
    """A failure that retrying cannot fix (404, 403, malformed request)."""


class RetryExhaustedError(FetchError):
    """Raised after the retry budget is spent on transient failures."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Exception | None,
        url: str | None = None,
    ) -> None:
        status_code = getattr(last_error, "status_code", None)
        super().__init__(message, url=url, status_code=status_code)
        self.attempts = attempts
        self.last_error = last_error


class ParseError(CatalogError):
    """Raised when raw content cannot be turned into a product."""


class InvalidListingError(CatalogError):
    """Raised when a parsed listing is a placeholder or error page."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StorageError(CatalogError):
    """Raised by object storage backends on read or write failure."""
