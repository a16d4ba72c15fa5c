"""
Provider adapters for prices, supply, market data and emissions.

This module provides a unified interface over the upstream data providers
used by the metrics service.

Usage:
    from tokenomics.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available fetchers
    available = get_available_fetchers()
    # ['berachain', 'coingecko', 'coinpaprika', 'dune']

    # Only the fetchers able to report supply
    get_available_fetchers("supply")
    # ['berachain', 'coingecko']

    # Create a fetcher instance
    fetcher = get_fetcher("berachain")
    supply = await fetcher.fetch_supply("bera")

    # For fetchers requiring API keys
    fetcher = get_fetcher("dune", api_key="your-api-key")
"""

# Import base classes and utilities
from .base import (
    EMISSIONS,
    FETCHER_REGISTRY,
    HISTORY,
    MARKET,
    PRICE,
    SUPPLY,
    BaseFetcher,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .berachain import BerachainSupplyFetcher
from .coingecko import CoinGeckoFetcher
from .coinpaprika import CoinpaprikaFetcher
from .dune import DuneFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    # Metric names
    "PRICE",
    "SUPPLY",
    "MARKET",
    "HISTORY",
    "EMISSIONS",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Fetcher implementations
    "BerachainSupplyFetcher",
    "CoinGeckoFetcher",
    "CoinpaprikaFetcher",
    "DuneFetcher",
]
