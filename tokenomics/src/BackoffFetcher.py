"""BackoffFetcher: One HTTP request with bounded retries.

Every provider adapter sends its requests through a BackoffFetcher instead
of running its own retry loop.

Retry policy (``max_retries`` attempts in total):
    - Network errors and 5xx responses: wait ``backoff_base ** attempt``
      seconds (1s, 2s, 4s, ...) and retry.
    - 429 responses: wait for the ``Retry-After`` header if present,
      otherwise the same exponential schedule. The attempt still counts
      against the budget.
    - Other 4xx responses: raise TerminalFetchError immediately.
    - Budget exhausted: raise the last error.

Requests to the same provider are additionally spaced by a configurable
minimum interval, since upstream rate limits are per provider.

.. code-block:: python

    >>> fetcher = BackoffFetcher(max_retries=3, min_intervals={"coingecko": 2.0})
    >>> response = await fetcher.get(url, provider="coingecko")
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, ClassVar

import httpx

from .errors import FetchError, TerminalFetchError, TransientFetchError

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds.

    The HTTP-date form is not supported and yields None.

    :param value: Raw header value.
    :returns: Delay in seconds, or None if absent or unparseable.
    """
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)


class BackoffFetcher:
    """Performs HTTP requests with exponential backoff and rate-limit handling.

    :ivar max_retries: Default number of attempts per request.
    :ivar backoff_base: Base of the exponential delay schedule in seconds.
    :ivar min_intervals: Dict mapping provider name to the minimum number of
        seconds between two requests to that provider.
    :ivar timeout: Per-request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BACKOFF_BASE = 2.0
    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        min_intervals: dict[str, float] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the fetcher.

        :param client: HTTP client to use. Defaults to the process-wide
            shared client.
        :param max_retries: Number of attempts per request (default: 3).
        :param backoff_base: Delay before retry n is ``backoff_base ** n``.
        :param min_intervals: Per-provider minimum spacing between requests.
        :param timeout: Per-request timeout in seconds (default: 10).
        :param sleep: Coroutine used to wait between attempts.
        :param clock: Monotonic clock used for request spacing.
        :raises ValueError: If max_retries is less than 1.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._client = client
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.min_intervals = dict(min_intervals or {})
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._last_request: dict[str, float] = {}
        self._spacing_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if cls._shared_client is None or cls._shared_client.is_closed:
            cls._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return cls._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        if cls._shared_client is not None and not cls._shared_client.is_closed:
            await cls._shared_client.aclose()
            cls._shared_client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client used for requests (the shared one unless injected)."""
        if self._client is None:
            return self.get_shared_client()
        return self._client

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retrying after zero-based ``attempt``."""
        return self.backoff_base**attempt

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        """Send a GET request. See fetch() for keyword arguments."""
        return await self.fetch("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        """Send a POST request. See fetch() for keyword arguments."""
        return await self.fetch("POST", url, **kwargs)

    async def fetch(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        provider: str = "",
        max_retries: int | None = None,
    ) -> httpx.Response:
        """Send a request, retrying transient failures.

        :param method: HTTP method.
        :param url: Request URL.
        :param params: Optional query parameters.
        :param json: Optional JSON body.
        :param headers: Optional request headers.
        :param provider: Provider name for spacing and log messages.
        :param max_retries: Override of the attempt budget for this call.
        :returns: Successful (2xx) response.
        :raises TransientFetchError: If every attempt failed transiently.
        :raises TerminalFetchError: On a non-retryable 4xx response.
        """
        attempts = max_retries or self.max_retries
        tag = provider or "http"
        last_error: FetchError | None = None

        for attempt in range(attempts):
            try:
                await self._wait_for_slot(provider)
                logger.debug("[%s] %s %s (attempt %d/%d)", tag, method, url, attempt + 1, attempts)
                response = await self.client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as e:
                last_error = TransientFetchError(f"Request timeout: {e}", provider=provider)
            except httpx.RequestError as e:
                last_error = TransientFetchError(f"Request failed: {e}", provider=provider)
            else:
                if response.is_success:
                    return response
                last_error = self._classify(response, provider)
                if isinstance(last_error, TerminalFetchError):
                    logger.warning("[%s] %s %s failed: %s", tag, method, url, last_error)
                    raise last_error

            if attempt + 1 >= attempts:
                break

            delay = self.backoff_delay(attempt)
            if isinstance(last_error, TransientFetchError) and last_error.retry_after is not None:
                delay = last_error.retry_after
            logger.warning(
                "[%s] %s %s failed: %s (attempt %d/%d), retrying in %.1fs",
                tag,
                method,
                url,
                last_error,
                attempt + 1,
                attempts,
                delay,
            )
            await self._sleep(delay)

        assert last_error is not None
        logger.warning("[%s] %s %s gave up after %d attempts: %s", tag, method, url, attempts, last_error)
        raise last_error

    def _classify(self, response: httpx.Response, provider: str) -> FetchError:
        """Map a non-2xx response to a transient or terminal error."""
        status = response.status_code
        body = response.text[:200]
        if status == 429:
            return TransientFetchError(
                "HTTP 429: rate limited",
                provider=provider,
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            return TransientFetchError(
                f"HTTP {status}: {body}", provider=provider, status_code=status
            )
        return TerminalFetchError(f"HTTP {status}: {body}", provider=provider, status_code=status)

    async def _wait_for_slot(self, provider: str) -> None:
        """Enforce the minimum interval between requests to one provider."""
        interval = self.min_intervals.get(provider, 0.0)
        if not provider or interval <= 0:
            return
        lock = self._spacing_locks.setdefault(provider, asyncio.Lock())
        async with lock:
            last = self._last_request.get(provider)
            if last is not None:
                wait = last + interval - self._clock()
                if wait > 0:
                    logger.debug("[%s] Spacing request by %.2fs", provider, wait)
                    await self._sleep(wait)
            self._last_request[provider] = self._clock()
