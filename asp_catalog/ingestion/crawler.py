"""
Network Fetch Module
====================

Provides HTTP fetching with bounded retries, exponential backoff with
jitter, and a fixed politeness delay between requests.

Only transient failures are retried: connection errors (reset, timeout,
abort) and HTTP 408/429/500/502/503/504. Every other non-2xx response
fails immediately.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from asp_catalog.core.enums import FetchErrorKind
from asp_catalog.core.errors import (
    FetchError,
    PermanentFetchError,
    RetryExhaustedError,
    TransientFetchError,
)
from asp_catalog.db.models import _utc_now

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Connection-level failures worth another attempt
TRANSIENT_EXCEPTIONS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class RetryOptions:
    """Retry budget and backoff settings (delays in seconds)."""

    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RetryOptions:
        """Create from dictionary, using defaults for missing values."""
        if data is None:
            return cls()
        return cls(
            max_retries=int(data.get("max_retries", 3)),
            initial_delay=float(data.get("initial_delay", 0.1)),
            max_delay=float(data.get("max_delay", 5.0)),
            jitter_ratio=float(data.get("jitter_ratio", 0.1)),
        )


def compute_backoff_delay(
    attempt: int,
    options: RetryOptions,
    rng: random.Random | None = None,
) -> float:
    """
    Compute the wait before the retry following a failed attempt.

    The exponential base initial_delay * 2**attempt is capped at max_delay
    first, then jittered uniformly within +/- jitter_ratio of the capped
    value, so retries that hit the cap still spread out.

    Args:
        attempt: 0-based index of the attempt that just failed
        options: Retry settings
        rng: Optional random source (for deterministic tests)

    Returns:
        Delay in seconds, never negative
    """
    rng = rng or random
    capped = min(options.initial_delay * (2**attempt), options.max_delay)
    jitter = capped * options.jitter_ratio * (rng.random() * 2 - 1)
    return max(0.0, capped + jitter)


async def fetch_with_retry(
    client: httpx.AsyncClient,
    request: httpx.Request,
    options: RetryOptions | None = None,
    sleep: SleepFn = asyncio.sleep,
    rng: random.Random | None = None,
) -> httpx.Response:
    """
    Send a request, retrying transient failures.

    Makes at most ``options.max_retries + 1`` attempts.

    Args:
        client: HTTP client to send with
        request: Prepared request
        options: Retry settings (defaults to RetryOptions())
        sleep: Coroutine used to wait between attempts
        rng: Optional random source for jitter

    Returns:
        The first successful (2xx/3xx) response

    Raises:
        PermanentFetchError: On a non-transient HTTP status
        RetryExhaustedError: When every attempt failed transiently
    """
    options = options or RetryOptions()
    url = str(request.url)
    last_error: Exception | None = None
    attempts = options.max_retries + 1

    for attempt in range(attempts):
        try:
            response = await client.send(request)
        except TRANSIENT_EXCEPTIONS as e:
            last_error = TransientFetchError(f"{type(e).__name__}: {e}", url=url)
            last_error.__cause__ = e
        else:
            if response.status_code in TRANSIENT_STATUS_CODES:
                await response.aclose()
                last_error = TransientFetchError(
                    f"HTTP {response.status_code}", url=url, status_code=response.status_code
                )
            elif response.status_code >= 400:
                await response.aclose()
                raise PermanentFetchError(
                    f"HTTP {response.status_code} for {url}",
                    url=url,
                    status_code=response.status_code,
                )
            else:
                return response

        if attempt < attempts - 1:
            delay = compute_backoff_delay(attempt, options, rng)
            logger.warning(
                f"Transient failure fetching {url}: {last_error} "
                f"(attempt {attempt + 1}/{attempts}, retrying in {delay:.2f}s)"
            )
            await sleep(delay)

    logger.error(f"Giving up on {url} after {attempts} attempts: {last_error}")
    raise RetryExhaustedError(
        f"Failed to fetch {url} after {attempts} attempts",
        attempts=attempts,
        last_error=last_error,
        url=url,
    ) from last_error


@dataclass
class FetchResult:
    """Result of fetching a URL."""

    url: str
    content: bytes
    content_hash: str
    mime_type: str
    status_code: int
    fetched_at: datetime
    error: str | None = None
    error_kind: FetchErrorKind | None = None

    @property
    def success(self) -> bool:
        """Check if fetch was successful."""
        return self.error is None and 200 <= self.status_code < 300


class Crawler:
    """
    HTTP fetcher for batch crawls.

    Features:
    - Bounded retries with exponential backoff and jitter
    - Explicit per-request timeout
    - Fixed politeness delay between items (pause())
    - Content hashing for deduplication

    Use as an async context manager so the underlying client is closed.
    """

    def __init__(
        self,
        user_agent: str = "ASPCatalog/0.1",
        timeout: float = 30.0,
        retry: RetryOptions | None = None,
        request_delay_seconds: float = 0.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.retry = retry or RetryOptions()
        self.request_delay_seconds = request_delay_seconds
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> Crawler:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @staticmethod
    def compute_hash(content: bytes) -> str:
        """
        Compute SHA-256 hash of content.

        Args:
            content: Raw bytes to hash

        Returns:
            Hex-encoded SHA-256 hash
        """
        return hashlib.sha256(content).hexdigest()

    async def pause(self) -> None:
        """Wait the configured politeness delay."""
        if self.request_delay_seconds > 0:
            await self._sleep(self.request_delay_seconds)

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a URL with retries.

        Never raises for network or HTTP failures; the error is recorded
        on the result so batch callers can skip the item and continue.

        Args:
            url: URL to fetch

        Returns:
            FetchResult with content or error
        """
        fetched_at = _utc_now()
        request = self._client.build_request("GET", url)

        try:
            response = await fetch_with_retry(
                self._client, request, self.retry, sleep=self._sleep
            )
        except RetryExhaustedError as e:
            return self._failed(url, fetched_at, e, FetchErrorKind.TRANSIENT_EXHAUSTED)
        except PermanentFetchError as e:
            logger.warning(f"Permanent failure fetching {url}: {e}")
            return self._failed(url, fetched_at, e, FetchErrorKind.PERMANENT)

        content = response.content
        return FetchResult(
            url=url,
            content=content,
            content_hash=self.compute_hash(content),
            mime_type=response.headers.get("content-type", "").split(";")[0].strip(),
            status_code=response.status_code,
            fetched_at=fetched_at,
        )

    @staticmethod
    def _failed(
        url: str, fetched_at: datetime, error: FetchError, kind: FetchErrorKind
    ) -> FetchResult:
        return FetchResult(
            url=url,
            content=b"",
            content_hash="",
            mime_type="",
            status_code=error.status_code or 0,
            fetched_at=fetched_at,
            error=str(error),
            error_kind=kind,
        )
