"""Base fetcher interface and provider registry.

Each provider adapter inherits from BaseFetcher, declares which metrics it
can produce, and implements the matching coroutines. All HTTP goes through
a BackoffFetcher, so adapters contain no retry logic of their own; they
only turn JSON into typed records (raising ParseError on bad payloads).

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"
        capabilities = frozenset({"price"})

        async def fetch_price(self, token: str) -> TokenPrice:
            response = await self._get(f"https://api.example.com/{token}")
            return TokenPrice(usd=float(self._json(response)["usd"]))
"""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar

import httpx

from ..BackoffFetcher import BackoffFetcher
from ..errors import ConfigError, ParseError
from ..records import (
    ChainMarketData,
    SupplyHistoryPoint,
    SupplySnapshot,
    TokenPrice,
)

logger = logging.getLogger(__name__)

# Metrics a fetcher can provide.
PRICE = "price"
SUPPLY = "supply"
MARKET = "market"
HISTORY = "history"
EMISSIONS = "emissions"


class BaseFetcher:
    """Base class for provider adapters.

    Subclasses must define:
        - name: Class variable identifying the provider (e.g., "coingecko")
        - capabilities: Metrics the provider can produce
        - the fetch_* coroutine for each declared capability

    :cvar name: Unique identifier for this fetcher.
    :cvar capabilities: Set of metric names this fetcher provides.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar backoff: Request executor with retry policy.
    """

    name: ClassVar[str] = ""
    capabilities: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        api_key: str | None = None,
        backoff: BackoffFetcher | None = None,
    ) -> None:
        """Initialize the fetcher.

        :param api_key: Optional API key for authenticated endpoints.
        :param backoff: Request executor (default: one with default policy).
        """
        self.api_key = api_key
        self.backoff = backoff or BackoffFetcher()

    @property
    def has_api_key(self) -> bool:
        """Check if this fetcher has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    def supports(self, metric: str) -> bool:
        """Check if this fetcher can produce the given metric."""
        return metric in self.capabilities

    def _unsupported(self, metric: str) -> ConfigError:
        return ConfigError(f"Fetcher '{self.name}' does not provide {metric}")

    async def fetch_price(self, token: str) -> TokenPrice:
        """Fetch the spot price of a token (e.g., "bera")."""
        raise self._unsupported(PRICE)

    async def fetch_supply(self, token: str) -> SupplySnapshot:
        """Fetch circulating and total supply of a token."""
        raise self._unsupported(SUPPLY)

    async def fetch_market(self, chain_id: str) -> ChainMarketData:
        """Fetch current market data of a tracked chain."""
        raise self._unsupported(MARKET)

    async def fetch_supply_history(self, chain_id: str) -> tuple[SupplyHistoryPoint, ...]:
        """Fetch the estimated daily supply history of a tracked chain."""
        raise self._unsupported(HISTORY)

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request with the fetcher's retry policy.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetchError: On non-2xx response or network error after retries.
        """
        return await self.backoff.get(url, params=params, headers=headers, provider=self.name)

    async def _post(
        self,
        url: str,
        *,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP POST request with the fetcher's retry policy.

        :param url: Request URL.
        :param json: Optional JSON body.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetchError: On non-2xx response or network error after retries.
        """
        return await self.backoff.post(url, json=json, headers=headers, provider=self.name)

    def _json(self, response: httpx.Response) -> Any:
        """Decode a JSON response body.

        :raises ParseError: If the body is not valid JSON.
        """
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Invalid JSON from {self.name}: {e}", provider=self.name) from e


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(
    name: str,
    api_key: str | None = None,
    backoff: BackoffFetcher | None = None,
) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "coingecko", "dune").
    :param api_key: Optional API key.
    :param backoff: Optional request executor shared between fetchers.
    :returns: Fetcher instance.
    :raises ConfigError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ConfigError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](api_key=api_key, backoff=backoff)


def get_available_fetchers(metric: str | None = None) -> list[str]:
    """Get list of available fetcher names.

    :param metric: Optional metric to filter by.
    :returns: Sorted list of registered fetcher names.
    """
    return sorted(
        name
        for name, cls in FETCHER_REGISTRY.items()
        if metric is None or metric in cls.capabilities
    )
