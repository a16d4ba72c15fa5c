"""TTLCache: Per-key value store with explicit expiry and single-flight.

Each entry carries its own TTL and the provider it came from. Expired
entries are never evicted: get() stops returning them, but get_stale()
keeps serving them flagged as stale so a failing refresh can degrade
instead of failing.

The key space (tracked chains and metrics) is small and fixed, so the
cache is unbounded and entries are only replaced on refresh.

.. code-block:: python

    >>> cache = TTLCache()
    >>> cache.put("price:bera", 2.5, ttl=300, source="coingecko")
    >>> cache.get("price:bera")
    2.5
    >>> cache.get_stale("price:bera")
    (2.5, False)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its provenance.

    :ivar value: Cached value.
    :ivar fetched_at: Unix timestamp when the value was stored.
    :ivar ttl: Seconds the value stays fresh.
    :ivar source: Provider the value came from.
    :ivar stale: True once ``now - fetched_at >= ttl`` (set on read).
    """

    value: T
    fetched_at: float
    ttl: float
    source: str = ""
    stale: bool = False

    def is_expired(self, now: float) -> bool:
        """Check whether the entry is past its TTL at ``now``."""
        return now - self.fetched_at >= self.ttl


class TTLCache:
    """In-memory cache owned by one MetricsService instance.

    Readers always receive copies of cached values, never the stored object.

    :ivar default_ttl: TTL used by put() when none is given.
    """

    DEFAULT_TTL_SECONDS = 300.0

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty cache.

        :param default_ttl: TTL in seconds used when put() gets none.
        :param clock: Callable returning the current Unix time.
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    def put(
        self,
        key: str,
        value: Any,
        ttl: float | None = None,
        source: str = "",
    ) -> None:
        """Store a value, replacing any existing entry for the key.

        :param key: Cache key (e.g., "price:bera").
        :param value: Value to store. A copy is kept.
        :param ttl: Seconds the value stays fresh (default: default_ttl).
        :param source: Provider the value came from.
        """
        entry = CacheEntry(
            value=copy.deepcopy(value),
            fetched_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            source=source,
        )
        self._entries[key] = entry
        logger.debug("Cached %s from %s (ttl=%ss)", key, source or "?", entry.ttl)

    def get(self, key: str) -> Any | None:
        """Get a value only if it is still fresh.

        :param key: Cache key.
        :returns: Copy of the value, or None if missing or expired.
        """
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return copy.deepcopy(entry.value)

    def get_stale(self, key: str) -> tuple[Any, bool] | None:
        """Get the last known value regardless of expiry.

        :param key: Cache key.
        :returns: Tuple of (value copy, stale flag), or None if never cached.
        """
        entry = self.get_entry(key)
        if entry is None:
            return None
        return entry.value, entry.stale

    def get_entry(self, key: str) -> CacheEntry[Any] | None:
        """Get a copy of the full entry with its stale flag set.

        :param key: Cache key.
        :returns: CacheEntry copy, or None if never cached.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        return replace(
            entry,
            value=copy.deepcopy(entry.value),
            stale=entry.is_expired(self._clock()),
        )

    def keys(self) -> list[str]:
        """Get all keys that have ever been cached."""
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def with_single_flight(
        self, key: str, producer: Callable[[], Awaitable[T]]
    ) -> T:
        """Run producer at most once concurrently per key.

        Callers arriving while a producer for the same key is running await
        that producer's result (or exception) instead of starting another.
        Cancelling one waiter does not cancel the shared producer.

        :param key: Cache key the producer refreshes.
        :param producer: Zero-argument coroutine function.
        :returns: The producer's result.
        """
        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.debug("Joining in-flight refresh for %s", key)
            return await asyncio.shield(inflight)

        task: asyncio.Future[T] = asyncio.ensure_future(producer())
        self._inflight[key] = task

        def _release(done: asyncio.Future[Any]) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_release)
        return await asyncio.shield(task)

    def is_in_flight(self, key: str) -> bool:
        """Check whether a producer is currently running for the key."""
        return key in self._inflight
