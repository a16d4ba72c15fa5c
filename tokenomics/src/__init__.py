"""
Berachain Tokenomics - Resilient Metrics Aggregation Module

This module aggregates token-economics metrics from unreliable providers:
- TTLCache: Per-key cache with staleness marking and single-flight refresh
- BackoffFetcher: HTTP requests with exponential backoff and Retry-After
- FallbackChain: Ordered provider fallback degrading to stale data
- AsyncJobPoller: Submit-then-poll protocol for query providers
- inflation: Windowed inflation and supply-growth calculations
- FallbackStore: Durable last-resort snapshot of the emission series
- MetricsService: Main orchestrator wiring everything together
- fetchers: Modular provider adapter implementations
"""

from .BackoffFetcher import BackoffFetcher
from .FallbackChain import FallbackChain, Provider, ResolvedMetric
from .FallbackStore import FallbackStore, JsonFallbackStore
from .JobPoller import AsyncJobPoller, JobExecution, JobState, JobStatus, ResultSet
from .MetricsService import DEFAULT_CHAINS, INFLATION_KINDS, MetricsService, ServiceConfig
from .TTLCache import CacheEntry, TTLCache

__all__ = [
    "AsyncJobPoller",
    "BackoffFetcher",
    "CacheEntry",
    "DEFAULT_CHAINS",
    "FallbackChain",
    "FallbackStore",
    "INFLATION_KINDS",
    "JobExecution",
    "JobState",
    "JobStatus",
    "JsonFallbackStore",
    "MetricsService",
    "Provider",
    "ResolvedMetric",
    "ResultSet",
    "ServiceConfig",
    "TTLCache",
]
