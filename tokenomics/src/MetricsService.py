"""MetricsService: Main orchestrator for aggregated token-economics metrics.

This module wires the provider adapters into one FallbackChain per logical
metric, shares a single TTLCache between them, and derives the inflation
tables from the resolved emission series and supplies.

Architecture:
    - One BackoffFetcher shared by every provider adapter (retries, spacing)
    - One FallbackChain per metric key, all backed by the same TTLCache
    - Emission queries run through AsyncJobPoller (submit, then poll)
    - Every live emission refresh is synced to the FallbackStore, which
      serves as the last resort once providers and cache are exhausted
    - Refreshes of independent keys run concurrently and are joined before
      a report is produced

Metric keys:
    - price:{token}      TokenPrice
    - supply:{token}     SupplySnapshot (bera, bgt)
    - market:{chain}     ChainMarketData
    - history:{chain}    tuple[SupplyHistoryPoint, ...]
    - emissions          EmissionSnapshot
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable

from .BackoffFetcher import BackoffFetcher
from .errors import AllProvidersExhausted, ConfigError
from .FallbackChain import STALE_WARNING, FallbackChain, Provider, ResolvedMetric
from .FallbackStore import FallbackStore, JsonFallbackStore
from .fetchers import (
    EMISSIONS,
    HISTORY,
    MARKET,
    PRICE,
    SUPPLY,
    BaseFetcher,
    get_available_fetchers,
    get_fetcher,
)
from .inflation import (
    compute_combined_inflation,
    compute_emission_inflation,
    compute_genesis_growth,
    compute_inflation,
    compute_supply_growth,
)
from .JobPoller import AsyncJobPoller
from .records import EmissionSnapshot, SupplySnapshot, utc_now_iso
from .TTLCache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_CHAINS = [
    "bitcoin",
    "ethereum",
    "solana",
    "sui",
    "avalanche-2",
    "binancecoin",
    "sei-network",
    "near",
    "aptos",
    "berachain-bera",
    "berachain-bgt",
]

# Chains whose supply growth is also reported since Berachain genesis.
GENESIS_CHAINS = frozenset({"berachain-bera", "berachain-bgt"})

SUPPLY_TOKENS = ("bera", "bgt")
INFLATION_KINDS = ("bera", "bgt", "bera+bgt")
DEFAULT_WINDOWS = (1, 7, 30)
GROWTH_WINDOWS = (7, 30, 365)

EMISSIONS_KEY = "emissions"
DUNE_LATEST = "dune-latest"

# Relative change between cached and live supply that is worth a warning.
SUPPLY_MISMATCH_THRESHOLD = 0.01


@dataclass
class ServiceConfig:
    """Externally injected configuration of the metrics service.

    TTLs and delays are in seconds. Provider lists are in priority order.
    """

    chains: list[str] = field(default_factory=lambda: list(DEFAULT_CHAINS))
    price_tokens: list[str] = field(default_factory=lambda: ["bera"])
    price_sources: list[str] = field(default_factory=lambda: ["coingecko", "coinpaprika"])
    supply_sources: list[str] = field(default_factory=lambda: ["berachain", "coingecko"])
    market_sources: list[str] = field(default_factory=lambda: ["coingecko"])
    history_sources: list[str] = field(default_factory=lambda: ["coingecko"])
    emission_sources: list[str] = field(default_factory=lambda: ["dune", DUNE_LATEST])
    api_keys: dict[str, str] = field(default_factory=dict)
    price_ttl: float = 300.0
    market_ttl: float = 3600.0
    history_ttl: float = 86400.0
    supply_ttl: float = 300.0
    emission_ttl: float = 3600.0
    max_retries: int = 3
    rate_limit_delay: float = 2.0
    rate_limited_sources: list[str] = field(
        default_factory=lambda: ["coingecko", "coinpaprika"]
    )
    fetch_timeout: float = 10.0
    poll_interval: float = 1.0
    max_polls: int = 30
    dune_query_id: str = "4740951"
    reuse_query_results: bool = False
    backup_path: str = "data/backup.json"
    refresh_period: int = 300


class MetricsService:
    """Resolves, caches and reports token-economics metrics.

    :ivar config: Service configuration.
    :ivar cache: Cache shared by every chain of this service.
    :ivar store: Durable last-resort store for the emission series.
    :ivar chains: Dict mapping metric key to its FallbackChain.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        *,
        cache: TTLCache | None = None,
        store: FallbackStore | None = None,
        backoff: BackoffFetcher | None = None,
        fetchers: dict[str, BaseFetcher] | None = None,
        poller: AsyncJobPoller | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        """Initialize the service and build one chain per metric key.

        :param config: Service configuration (default: ServiceConfig()).
        :param cache: Cache instance (default: a new TTLCache).
        :param store: Fallback store (default: JsonFallbackStore at backup_path).
        :param backoff: Request executor shared by the adapters.
        :param fetchers: Pre-built adapters by name, overriding the registry.
        :param poller: Job poller for the query provider.
        :param today: Callable returning the current UTC day, for inflation
            windows.
        :raises ConfigError: If a provider list is empty or names an unknown
            or incapable provider.
        """
        self.config = config or ServiceConfig()
        self.cache = cache or TTLCache()
        self.store = store or JsonFallbackStore(self.config.backup_path)
        self.backoff = backoff or BackoffFetcher(
            max_retries=self.config.max_retries,
            min_intervals={
                name: self.config.rate_limit_delay
                for name in self.config.rate_limited_sources
            },
            timeout=self.config.fetch_timeout,
        )
        self._today = today

        self._validate_sources(PRICE, self.config.price_sources)
        self._validate_sources(SUPPLY, self.config.supply_sources)
        self._validate_sources(MARKET, self.config.market_sources)
        self._validate_sources(HISTORY, self.config.history_sources)
        self._validate_sources(EMISSIONS, self.config.emission_sources, extra=(DUNE_LATEST,))

        self.fetchers: dict[str, BaseFetcher] = dict(fetchers or {})
        for name in self._required_fetchers():
            if name not in self.fetchers:
                self.fetchers[name] = get_fetcher(
                    name, api_key=self.config.api_keys.get(name), backoff=self.backoff
                )

        self.poller = poller
        if self.poller is None and "dune" in self.fetchers:
            self.poller = AsyncJobPoller(
                self.fetchers["dune"],
                poll_interval=self.config.poll_interval,
                max_polls=self.config.max_polls,
            )

        self.chains: dict[str, FallbackChain[Any]] = {}
        self._build_chains()

    @staticmethod
    def _validate_sources(metric: str, sources: list[str], extra: tuple[str, ...] = ()) -> None:
        if not sources:
            raise ConfigError(f"At least one {metric} source must be specified")
        available = get_available_fetchers(metric) + list(extra)
        invalid = [s for s in sources if s not in available]
        if invalid:
            raise ConfigError(
                f"Unknown {metric} sources: {invalid}. Available: {', '.join(available)}"
            )

    def _required_fetchers(self) -> list[str]:
        names: list[str] = []
        for sources in (
            self.config.price_sources,
            self.config.supply_sources,
            self.config.market_sources,
            self.config.history_sources,
        ):
            names.extend(sources)
        if self.config.emission_sources:
            names.append("dune")
        return list(dict.fromkeys(names))

    def _build_chains(self) -> None:
        """Create the FallbackChain of every tracked metric key."""
        for token in self.config.price_tokens:
            self._add_chain(
                f"price:{token}",
                [
                    Provider(name, functools.partial(self.fetchers[name].fetch_price, token))
                    for name in self.config.price_sources
                ],
                self.config.price_ttl,
            )

        for token in SUPPLY_TOKENS:
            self._add_chain(
                f"supply:{token}",
                [
                    Provider(name, functools.partial(self.fetchers[name].fetch_supply, token))
                    for name in self.config.supply_sources
                ],
                self.config.supply_ttl,
                on_refresh=self._check_supply_mismatch,
            )

        for chain_id in self.config.chains:
            self._add_chain(
                f"market:{chain_id}",
                [
                    Provider(name, functools.partial(self.fetchers[name].fetch_market, chain_id))
                    for name in self.config.market_sources
                ],
                self.config.market_ttl,
            )
            self._add_chain(
                f"history:{chain_id}",
                [
                    Provider(
                        name,
                        functools.partial(self.fetchers[name].fetch_supply_history, chain_id),
                    )
                    for name in self.config.history_sources
                ],
                self.config.history_ttl,
            )

        emission_providers = {
            "dune": self._run_emission_query,
            DUNE_LATEST: self._fetch_latest_emissions,
        }
        self._add_chain(
            EMISSIONS_KEY,
            [Provider(name, emission_providers[name]) for name in self.config.emission_sources],
            self.config.emission_ttl,
            last_resort=self._read_fallback_store,
            on_refresh=self._sync_fallback_store,
        )
        logger.debug(f"Built {len(self.chains)} metric chains")

    def _add_chain(self, key: str, providers: list[Provider[Any]], ttl: float, **kwargs: Any) -> None:
        self.chains[key] = FallbackChain(key, providers, self.cache, ttl, **kwargs)

    async def _run_emission_query(self) -> EmissionSnapshot:
        if self.poller is None:
            raise ConfigError("No job poller configured for emission queries")
        result = await self.poller.run(
            self.config.dune_query_id, fallback=self.config.reuse_query_results
        )
        now = utc_now_iso()
        return EmissionSnapshot(
            emissions=result.rows,
            last_updated=result.ended_at or now,
            last_synced=now,
        )

    async def _fetch_latest_emissions(self) -> EmissionSnapshot:
        dune = self.fetchers["dune"]
        result = await dune.fetch_latest(self.config.dune_query_id)
        now = utc_now_iso()
        return EmissionSnapshot(
            emissions=result.rows,
            last_updated=result.ended_at or now,
            last_synced=now,
        )

    async def _read_fallback_store(self) -> tuple[EmissionSnapshot, str] | None:
        snapshot = await asyncio.to_thread(self.store.read)
        if snapshot is None:
            return None
        return replace(snapshot, source="fallback"), "fallback"

    async def _sync_fallback_store(
        self, key: str, value: EmissionSnapshot, previous: Any
    ) -> None:
        if not value.emissions:
            logger.warning(f"{key}: live refresh returned no rows, fallback store not updated")
            return
        try:
            await asyncio.to_thread(self.store.write, replace(value, source="live"))
        except OSError as e:
            logger.error(f"Failed to write fallback snapshot: {e}")

    def _check_supply_mismatch(
        self, key: str, value: SupplySnapshot, previous: SupplySnapshot | None
    ) -> None:
        """Log when a live supply differs from the cached one by more than 1%.

        Informational only: the live value always replaces the cached one.
        """
        if previous is None:
            return
        for name, cached, live in (
            ("circulating", previous.circulating_supply, value.circulating_supply),
            ("total", previous.total_supply, value.total_supply),
        ):
            if cached > 0 and abs(live - cached) / cached > SUPPLY_MISMATCH_THRESHOLD:
                logger.warning(
                    f"{key}: {name} supply mismatch, cached {cached:.2f} vs live {live:.2f}"
                )

    async def get_metric(self, key: str, *, force: bool = False) -> ResolvedMetric[Any]:
        """Resolve one metric key.

        :param key: Metric key (e.g., "price:bera", "supply:bgt", "emissions").
        :param force: Bypass the TTL (single-flight still applies).
        :returns: ResolvedMetric with value, source, stale flag and warning.
        :raises ConfigError: If the key is not tracked.
        :raises AllProvidersExhausted: If no value is available at all.
        """
        chain = self.chains.get(key)
        if chain is None:
            raise ConfigError(f"Unknown metric key '{key}'")
        return await chain.resolve(force=force)

    async def get_price(self, token: str = "bera") -> ResolvedMetric[Any]:
        return await self.get_metric(f"price:{token}")

    async def get_supply(self, token: str) -> ResolvedMetric[Any]:
        return await self.get_metric(f"supply:{token}")

    async def get_emissions(self) -> ResolvedMetric[Any]:
        return await self.get_metric(EMISSIONS_KEY)

    async def get_chain(self, chain_id: str) -> dict[str, Any]:
        """Market data of one chain joined with its supply history.

        Market data and history are resolved concurrently. A missing history
        only drops the growth figures.

        :param chain_id: Tracked chain id (CoinGecko id).
        :returns: JSON-serialisable dict.
        :raises AllProvidersExhausted: If no market data is available.
        """
        market, history = await asyncio.gather(
            self.get_metric(f"market:{chain_id}"),
            self.get_metric(f"history:{chain_id}"),
            return_exceptions=True,
        )
        if isinstance(market, BaseException):
            raise market
        if isinstance(history, AllProvidersExhausted):
            history = None
        elif isinstance(history, BaseException):
            raise history
        return self._chain_entry(chain_id, market, history)

    @staticmethod
    def _chain_entry(
        chain_id: str,
        market: ResolvedMetric[Any],
        history: ResolvedMetric[Any] | None,
    ) -> dict[str, Any]:
        entry = market.to_dict()
        if history is None:
            logger.warning(f"{chain_id}: no supply history available")
            entry["supplyHistory"] = None
            entry["growth"] = None
            return entry

        points = history.value
        growth: dict[str, Any] = {}
        for days in GROWTH_WINDOWS:
            result = compute_supply_growth(points, days)
            growth[f"{days}d"] = result.to_dict() if result else None
        if chain_id in GENESIS_CHAINS:
            result = compute_genesis_growth(points)
            growth["genesis"] = result.to_dict() if result else None

        entry["supplyHistory"] = [point.to_dict() for point in points]
        entry["growth"] = growth
        if history.stale:
            entry["stale"] = True
            entry.setdefault("warning", history.warning)
        return entry

    async def get_inflation(self, kind: str, window_days: int | None = None) -> dict[str, Any]:
        """Inflation table for BERA, BGT or both combined.

        :param kind: "bera", "bgt" or "bera+bgt".
        :param window_days: Single window to compute. By default the table
            holds 1, 7 and 30 days plus "all" (the series length).
        :returns: JSON-serialisable dict with one row per window.
        :raises ValueError: If kind is unknown or window_days is less than 1.
        :raises AllProvidersExhausted: If emissions or a supply is unavailable.
        """
        tokens = self._inflation_tokens(kind)
        if window_days is not None and window_days < 1:
            raise ValueError("window_days must be at least 1")
        emissions, *supplies = await asyncio.gather(
            self.get_emissions(), *(self.get_supply(token) for token in tokens)
        )
        return self._inflation_table(kind, emissions, dict(zip(tokens, supplies)), window_days)

    @staticmethod
    def _inflation_tokens(kind: str) -> tuple[str, ...]:
        if kind not in INFLATION_KINDS:
            raise ValueError(f"Unknown inflation kind '{kind}'. Available: {INFLATION_KINDS}")
        return SUPPLY_TOKENS if kind == "bera+bgt" else (kind,)

    def _inflation_table(
        self,
        kind: str,
        emissions: ResolvedMetric[Any],
        supplies: dict[str, ResolvedMetric[Any]],
        window_days: int | None = None,
    ) -> dict[str, Any]:
        series = emissions.value.emissions
        today = self._today() if self._today else None

        if window_days is not None:
            windows = [(f"{window_days}d", window_days)]
        else:
            windows = [(f"{days}d", days) for days in DEFAULT_WINDOWS]
            if series:
                windows.append(("all", len(series)))

        rows = []
        for label, days in windows:
            if kind == "bera":
                stats = compute_inflation(series, supplies["bera"].value, days, today)
            elif kind == "bgt":
                stats = compute_emission_inflation(series, supplies["bgt"].value, days, today)
            else:
                stats = compute_combined_inflation(
                    series, supplies["bera"].value, supplies["bgt"].value, days, today
                )
            if stats is None:
                rows.append(
                    {
                        "period": label,
                        "windowDays": days,
                        "absolute": None,
                        "inflationCirculating": None,
                        "inflationTotal": None,
                    }
                )
            else:
                row = stats.to_dict()
                row["period"] = label
                rows.append(row)

        resolved = [emissions, *supplies.values()]
        warnings = [m.warning for m in resolved if m.warning]
        result: dict[str, Any] = {
            "kind": kind,
            "windows": rows,
            "source": emissions.source,
            "lastUpdated": emissions.value.last_updated,
            "stale": any(m.stale for m in resolved),
        }
        if warnings:
            result["warning"] = warnings[0]
        return result

    async def force_refresh_all(self) -> dict[str, ResolvedMetric[Any] | BaseException]:
        """Refresh every tracked key now, bypassing TTLs.

        Refreshes run concurrently; a key with a refresh already in flight
        joins it instead of issuing new requests.

        :returns: Dict mapping key to its ResolvedMetric or the error raised.
        """
        keys = list(self.chains)
        logger.info(f"Refreshing {len(keys)} metrics")
        results = await asyncio.gather(
            *(self.chains[key].resolve(force=True) for key in keys),
            return_exceptions=True,
        )
        outcome = dict(zip(keys, results))
        failed = [key for key, result in outcome.items() if isinstance(result, BaseException)]
        stale = [
            key
            for key, result in outcome.items()
            if isinstance(result, ResolvedMetric) and result.stale
        ]
        if failed:
            logger.error(f"Unavailable metrics: {', '.join(failed)}")
        if stale:
            logger.warning(f"Stale metrics: {', '.join(stale)}")
        return outcome

    async def build_report(self, *, force: bool = False) -> dict[str, Any]:
        """Resolve everything into one JSON-serialisable report.

        Every key is resolved once; chain entries and inflation tables are
        derived from those results. A failing metric becomes an
        ``{"error": ...}`` entry instead of failing the report.

        :param force: Refresh every key first, bypassing TTLs.
        :returns: Report dict.
        """
        if force:
            resolved = await self.force_refresh_all()
        else:
            keys = list(self.chains)
            results = await asyncio.gather(
                *(self.chains[key].resolve() for key in keys), return_exceptions=True
            )
            resolved = dict(zip(keys, results))

        metrics: dict[str, Any] = {}
        for key, result in resolved.items():
            if isinstance(result, ResolvedMetric):
                metrics[key] = result.to_dict()
            else:
                metrics[key] = {"error": str(result)}

        chains: dict[str, Any] = {}
        for chain_id in self.config.chains:
            market = resolved[f"market:{chain_id}"]
            history = resolved[f"history:{chain_id}"]
            if isinstance(market, BaseException):
                chains[chain_id] = {"error": str(market)}
            else:
                chains[chain_id] = self._chain_entry(
                    chain_id, market, None if isinstance(history, BaseException) else history
                )

        inflation: dict[str, Any] = {}
        for kind in INFLATION_KINDS:
            needed = [EMISSIONS_KEY] + [f"supply:{t}" for t in self._inflation_tokens(kind)]
            missing = [resolved[key] for key in needed if isinstance(resolved[key], BaseException)]
            if missing:
                inflation[kind] = {"error": str(missing[0])}
                continue
            inflation[kind] = self._inflation_table(
                kind,
                resolved[EMISSIONS_KEY],
                {token: resolved[f"supply:{token}"] for token in self._inflation_tokens(kind)},
            )

        report: dict[str, Any] = {
            "generatedAt": utc_now_iso(),
            "metrics": metrics,
            "chains": chains,
            "inflation": inflation,
        }
        if any(entry.get("stale") for entry in metrics.values()):
            report["warning"] = STALE_WARNING
        return report

    async def run(self, refresh_period: int | None = None) -> None:
        """Refresh all metrics periodically until cancelled.

        :param refresh_period: Seconds between refreshes (default: from config).
        """
        period = max(1, refresh_period or self.config.refresh_period)
        logger.info(f"Starting refresh loop for {len(self.chains)} metrics every {period}s")
        try:
            while True:
                outcome = await self.force_refresh_all()
                fresh = sum(
                    1
                    for result in outcome.values()
                    if isinstance(result, ResolvedMetric) and not result.stale
                )
                logger.info(f"Refresh cycle done: {fresh}/{len(outcome)} metrics fresh")
                await asyncio.sleep(period)
        finally:
            await self.close()

    async def close(self) -> None:
        """Release the shared HTTP client."""
        await BackoffFetcher.close_shared_client()
