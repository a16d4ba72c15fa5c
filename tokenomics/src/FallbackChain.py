"""FallbackChain: Ordered provider fallback for one logical metric.

A chain tries its providers in priority order and caches the first success
tagged with the provider name. If every provider fails, the last cached
value is served flagged as stale, then the optional last-resort source
(e.g., the durable fallback store). Only when all of those are empty does
resolve() raise AllProvidersExhausted.

Concurrent resolves of the same key share a single refresh via
TTLCache.with_single_flight(), so an outage never multiplies upstream
requests.

.. code-block:: python

    >>> chain = FallbackChain(
    ...     "price:bera",
    ...     [Provider("coingecko", coingecko_price), Provider("coinpaprika", paprika_price)],
    ...     cache,
    ...     ttl=300,
    ... )
    >>> metric = await chain.resolve()
    >>> metric.source, metric.stale
    ('coingecko', False)
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .errors import AllProvidersExhausted
from .TTLCache import TTLCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

STALE_WARNING = "Data may be out of date due to rate limiting or fetch error."
FALLBACK_WARNING = "Live providers unavailable, serving last synced snapshot."

# (key, new_value, previous_value) -> None, or an awaitable of None
RefreshHook = Callable[[str, Any, Any], "Awaitable[None] | None"]
# Returns (value, source) or None when the last-resort source is empty.
LastResort = Callable[[], Awaitable["tuple[Any, str] | None"]]


@dataclass(frozen=True)
class Provider(Generic[T]):
    """One strategy for producing a metric.

    :ivar name: Provider identifier recorded as the value's source.
    :ivar call: Zero-argument coroutine function returning the value.
    """

    name: str
    call: Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class ResolvedMetric(Generic[T]):
    """Result of resolving a metric.

    :ivar key: Metric key.
    :ivar value: Resolved value.
    :ivar source: Provider the value originally came from.
    :ivar stale: True if the value was not refreshed from a live provider
        within its TTL.
    :ivar warning: Human-readable warning for degraded results.
    """

    key: str
    value: T
    source: str
    stale: bool = False
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for reports. Values exposing to_dict() are expanded."""
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif isinstance(value, tuple):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        result: dict[str, Any] = {"value": value, "source": self.source, "stale": self.stale}
        if self.warning:
            result["warning"] = self.warning
        return result


class FallbackChain(Generic[T]):
    """Resolves one metric key through an ordered list of providers.

    :ivar key: Cache key of the metric.
    :ivar providers: Providers in priority order.
    :ivar ttl: Seconds a refreshed value stays fresh.
    """

    def __init__(
        self,
        key: str,
        providers: list[Provider[T]],
        cache: TTLCache,
        ttl: float,
        *,
        last_resort: LastResort | None = None,
        on_refresh: RefreshHook | None = None,
    ) -> None:
        """Initialize the chain.

        :param key: Cache key of the metric.
        :param providers: Providers in priority order.
        :param cache: Cache shared by all chains of the service.
        :param ttl: Seconds a refreshed value stays fresh.
        :param last_resort: Optional coroutine consulted after the stale cache.
        :param on_refresh: Optional hook called after each live refresh with
            (key, new value, previous cached value or None). Coroutine
            hooks are awaited.
        :raises ValueError: If no providers are given.
        """
        if not providers:
            raise ValueError(f"Chain {key} needs at least one provider")
        self.key = key
        self.providers = list(providers)
        self.cache = cache
        self.ttl = ttl
        self.last_resort = last_resort
        self.on_refresh = on_refresh

    @property
    def provider_names(self) -> list[str]:
        """Names of the providers in priority order."""
        return [p.name for p in self.providers]

    async def resolve(self, *, force: bool = False) -> ResolvedMetric[T]:
        """Resolve the metric.

        :param force: Skip the fresh-cache check and refresh from providers.
            Concurrent refreshes are still shared.
        :returns: ResolvedMetric with value, source and stale flag.
        :raises AllProvidersExhausted: If no live, cached or last-resort value exists.
        """
        if not force:
            entry = self.cache.get_entry(self.key)
            if entry is not None and not entry.stale:
                logger.debug("Returning cached %s from %s", self.key, entry.source)
                return ResolvedMetric(self.key, entry.value, entry.source)

        return await self.cache.with_single_flight(self.key, self._refresh)

    async def _refresh(self) -> ResolvedMetric[T]:
        """Try providers in order, then degrade to stale data."""
        errors: dict[str, Exception] = {}

        for provider in self.providers:
            try:
                value = await provider.call()
            except Exception as e:
                errors[provider.name] = e
                logger.warning(f"[{provider.name}] Failed to refresh {self.key}: {e}")
                continue

            previous = self.cache.get_stale(self.key)
            self.cache.put(self.key, value, ttl=self.ttl, source=provider.name)
            logger.info(f"{self.key}: refreshed from {provider.name}")
            if self.on_refresh is not None:
                result = self.on_refresh(self.key, value, previous[0] if previous else None)
                if inspect.isawaitable(result):
                    await result
            return ResolvedMetric(self.key, value, provider.name)

        entry = self.cache.get_entry(self.key)
        if entry is not None:
            logger.warning(
                f"All providers failed for {self.key}, "
                f"serving cached value from {entry.source}"
            )
            return ResolvedMetric(
                self.key, entry.value, entry.source, stale=True, warning=STALE_WARNING
            )

        if self.last_resort is not None:
            fallback = await self.last_resort()
            if fallback is not None:
                value, source = fallback
                logger.warning(f"All providers failed for {self.key}, serving {source}")
                return ResolvedMetric(
                    self.key, value, source, stale=True, warning=FALLBACK_WARNING
                )

        last_error = next(reversed(errors.values()), None)
        raise AllProvidersExhausted(self.key, errors) from last_error
