"""Unit tests for MetricsService."""

import asyncio
import json
import logging
import threading
from datetime import date
from unittest.mock import Mock

import pytest

from tokenomics.src.errors import (
    AllProvidersExhausted,
    ConfigError,
    JobFailed,
    TransientFetchError,
)
from tokenomics.src.FallbackChain import FALLBACK_WARNING, STALE_WARNING
from tokenomics.src.FallbackStore import FallbackStore
from tokenomics.src.JobPoller import JobExecution, JobState, JobStatus, ResultSet
from tokenomics.src.MetricsService import MetricsService, ServiceConfig
from tokenomics.src.records import (
    ChainMarketData,
    EmissionRecord,
    EmissionSnapshot,
    SupplyHistoryPoint,
    SupplySnapshot,
    TokenPrice,
    parse_emission_rows,
)
from tokenomics.src.TTLCache import TTLCache

TODAY = date(2025, 6, 2)
ROWS = [
    {"period": "2025-06-02", "burnt_amount": 100, "daily_emission": 20},
    {"period": "2025-06-01", "burnt_amount": 50, "daily_emission": 10},
]


def down(name: str) -> TransientFetchError:
    return TransientFetchError("HTTP 503", provider=name, status_code=503)


class FakeFetcher:
    """Adapter stand-in. Outcomes map metric -> {argument: value or exception}."""

    def __init__(self, name: str, **outcomes) -> None:
        self.name = name
        self.outcomes = outcomes
        self.calls: list[tuple[str, str]] = []

    async def _answer(self, metric: str, arg: str):
        self.calls.append((metric, arg))
        await asyncio.sleep(0)
        outcome = self.outcomes.get(metric, {}).get(arg, down(self.name))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fetch_price(self, token):
        return await self._answer("price", token)

    async def fetch_supply(self, token):
        return await self._answer("supply", token)

    async def fetch_market(self, chain_id):
        return await self._answer("market", chain_id)

    async def fetch_supply_history(self, chain_id):
        return await self._answer("history", chain_id)


class FakeDune:
    """Query provider answering the first poll with a scripted status."""

    def __init__(
        self, rows=ROWS, *, execute_error=None, latest_rows=None, status=None
    ) -> None:
        self.rows = rows
        self.status = status
        self.execute_error = execute_error
        self.latest_rows = latest_rows
        self.executed = 0

    async def execute(self, query_id):
        self.executed += 1
        if self.execute_error:
            raise self.execute_error
        return JobExecution(id="exec-1", query_id=query_id)

    async def get_status(self, execution_id):
        if self.status is not None:
            return self.status
        return JobStatus(JobState.COMPLETED, rows=self.rows, ended_at="2025-06-02T01:00:00Z")

    async def fetch_latest(self, query_id):
        if self.latest_rows is None:
            raise down("dune")
        return ResultSet(rows=parse_emission_rows(self.latest_rows), ended_at="2025-06-01T01:00:00Z")


class MemoryStore(FallbackStore):
    """In-memory fallback store."""

    def __init__(self, snapshot=None) -> None:
        self.snapshot = snapshot
        self.writes: list[EmissionSnapshot] = []
        self.threads: set[int] = set()

    def read(self):
        self.threads.add(threading.get_ident())
        return self.snapshot

    def write(self, snapshot):
        self.threads.add(threading.get_ident())
        self.writes.append(snapshot)
        self.snapshot = snapshot


BERA = SupplySnapshot(circulating_supply=1000.0, total_supply=2000.0)
BGT = SupplySnapshot(circulating_supply=500.0, total_supply=1000.0)
MARKET = ChainMarketData("BERACHAIN-BERA", 2.5, 2500.0, 1000.0, 2000.0)
HISTORY = (
    SupplyHistoryPoint(date(2025, 1, 10), 50.0),
    SupplyHistoryPoint(date(2025, 1, 21), 100.0),
    SupplyHistoryPoint(date(2025, 1, 31), 110.0),
)


def make_service(
    coingecko=None,
    coinpaprika=None,
    berachain=None,
    dune=None,
    store=None,
    clock=None,
    **config,
):
    coingecko = coingecko or FakeFetcher(
        "coingecko",
        price={"bera": TokenPrice(2.5, 0.00003)},
        market={"berachain-bera": MARKET},
        history={"berachain-bera": HISTORY},
    )
    coinpaprika = coinpaprika or FakeFetcher("coinpaprika", price={"bera": TokenPrice(2.4)})
    berachain = berachain or FakeFetcher("berachain", supply={"bera": BERA, "bgt": BGT})
    config.setdefault("chains", ["berachain-bera"])
    service = MetricsService(
        ServiceConfig(**config),
        cache=TTLCache(clock=clock or Mock(return_value=1000.0)),
        store=store if store is not None else MemoryStore(),
        fetchers={
            "coingecko": coingecko,
            "coinpaprika": coinpaprika,
            "berachain": berachain,
            "dune": dune or FakeDune(),
        },
        today=lambda: TODAY,
    )
    return service


class TestConfiguration:
    """Test chain construction and validation."""

    def test_chain_keys(self) -> None:
        """One chain per tracked metric key."""
        service = make_service(chains=["bitcoin", "berachain-bera"])

        assert sorted(service.chains) == [
            "emissions",
            "history:berachain-bera",
            "history:bitcoin",
            "market:berachain-bera",
            "market:bitcoin",
            "price:bera",
            "supply:bera",
            "supply:bgt",
        ]
        assert service.chains["price:bera"].provider_names == ["coingecko", "coinpaprika"]
        assert service.chains["emissions"].provider_names == ["dune", "dune-latest"]

    def test_unknown_source(self) -> None:
        """A provider without the capability is rejected."""
        with pytest.raises(ConfigError, match="Unknown supply sources"):
            make_service(supply_sources=["coinpaprika"])

    def test_empty_sources(self) -> None:
        """An empty provider list is rejected."""
        with pytest.raises(ConfigError, match="At least one price source"):
            make_service(price_sources=[])

    def test_unknown_metric_key(self) -> None:
        """Resolving an untracked key raises ConfigError."""
        service = make_service()
        with pytest.raises(ConfigError, match="Unknown metric key"):
            asyncio.run(service.get_metric("price:doge"))


class TestMetrics:
    """Test metric resolution through the chains."""

    def test_price_primary(self) -> None:
        """The primary price provider is preferred."""
        metric = asyncio.run(make_service().get_price("bera"))

        assert metric.value == TokenPrice(2.5, 0.00003)
        assert metric.source == "coingecko"
        assert metric.stale is False

    def test_price_secondary(self) -> None:
        """When the primary fails the secondary answers."""
        coingecko = FakeFetcher("coingecko")
        metric = asyncio.run(make_service(coingecko=coingecko).get_price("bera"))

        assert metric.source == "coinpaprika"
        assert coingecko.calls == [("price", "bera")]

    def test_supply(self) -> None:
        """Supply comes from the Berachain API first."""
        metric = asyncio.run(make_service().get_supply("bgt"))
        assert metric.value == BGT
        assert metric.source == "berachain"

    def test_concurrent_requests_share_refresh(self) -> None:
        """Concurrent callers for one key trigger a single upstream call."""
        coingecko = FakeFetcher("coingecko", price={"bera": TokenPrice(2.5)})
        service = make_service(coingecko=coingecko)

        async def scenario():
            return await asyncio.gather(*(service.get_price("bera") for _ in range(5)))

        results = asyncio.run(scenario())

        assert coingecko.calls == [("price", "bera")]
        assert {r.value for r in results} == {TokenPrice(2.5)}

    def test_supply_mismatch_is_logged(self, caplog) -> None:
        """A live supply differing >1% from the cached one is logged, not corrected."""
        berachain = FakeFetcher("berachain", supply={"bera": BERA, "bgt": BGT})
        service = make_service(berachain=berachain)

        asyncio.run(service.get_supply("bera"))
        berachain.outcomes["supply"]["bera"] = SupplySnapshot(1100.0, 2000.0)
        with caplog.at_level(logging.WARNING):
            metric = asyncio.run(service.get_metric("supply:bera", force=True))

        assert metric.value.circulating_supply == 1100.0
        assert "circulating supply mismatch" in caplog.text
        assert "total supply mismatch" not in caplog.text


class TestEmissions:
    """Test the emission chain and fallback store sync."""

    def test_live_refresh_syncs_store(self) -> None:
        """A live refresh writes the snapshot to the store."""
        store = MemoryStore()
        metric = asyncio.run(make_service(store=store).get_emissions())

        assert metric.source == "dune"
        assert metric.value.last_updated == "2025-06-02T01:00:00Z"
        assert len(store.writes) == 1
        assert store.writes[0].source == "live"
        assert [r.period for r in store.writes[0].emissions] == [
            date(2025, 6, 2),
            date(2025, 6, 1),
        ]

    def test_latest_results_when_execution_fails(self) -> None:
        """dune-latest answers when executing the query fails."""
        dune = FakeDune(execute_error=down("dune"), latest_rows=ROWS[1:])
        metric = asyncio.run(make_service(dune=dune).get_emissions())

        assert metric.source == "dune-latest"
        assert len(metric.value.emissions) == 1

    def test_reuse_query_results(self) -> None:
        """With reuse enabled a forced refresh serves the held result."""
        dune = FakeDune()
        service = make_service(dune=dune, reuse_query_results=True)

        asyncio.run(service.get_emissions())
        asyncio.run(service.get_metric("emissions", force=True))

        assert dune.executed == 1

    def test_store_fallback(self) -> None:
        """With every provider down and no cache, the stored snapshot is served."""
        stored = EmissionSnapshot(
            emissions=(EmissionRecord(period=date(2025, 5, 1), burnt_amount=5.0),),
            last_updated="2025-05-01T00:00:00Z",
            last_synced="2025-05-01T00:05:00Z",
            source="live",
        )
        store = MemoryStore(stored)
        dune = FakeDune(execute_error=down("dune"))

        metric = asyncio.run(make_service(dune=dune, store=store).get_emissions())

        assert metric.source == "fallback"
        assert metric.value.source == "fallback"
        assert metric.stale is True
        assert metric.warning == FALLBACK_WARNING
        assert store.writes == []

    def test_all_sources_exhausted(self) -> None:
        """With nothing live, cached or stored, AllProvidersExhausted is raised."""
        dune = FakeDune(execute_error=down("dune"))
        service = make_service(dune=dune)

        with pytest.raises(AllProvidersExhausted) as exc_info:
            asyncio.run(service.get_emissions())
        assert set(exc_info.value.errors) == {"dune", "dune-latest"}

    def test_job_failure_details_kept(self) -> None:
        """A failed execution stays inspectable once every source is exhausted."""
        dune = FakeDune(
            status=JobStatus(JobState.FAILED, diagnostics={"state": "QUERY_STATE_FAILED"})
        )
        service = make_service(dune=dune)

        with pytest.raises(AllProvidersExhausted) as exc_info:
            asyncio.run(service.get_emissions())

        failure = exc_info.value.errors["dune"]
        assert isinstance(failure, JobFailed)
        assert failure.execution_id == "exec-1"
        assert failure.diagnostics == {"state": "QUERY_STATE_FAILED"}

    def test_store_io_runs_off_event_loop(self) -> None:
        """Store reads and writes happen in a worker thread."""
        store = MemoryStore()
        service = make_service(store=store)
        asyncio.run(service.get_emissions())

        service.fetchers["dune"].execute_error = down("dune")
        fallback = make_service(dune=service.fetchers["dune"], store=store)
        asyncio.run(fallback.get_emissions())

        assert len(store.writes) == 1
        assert store.threads
        assert threading.get_ident() not in store.threads


class TestInflation:
    """Test inflation tables."""

    def test_bera_table(self) -> None:
        """The default table holds 1, 7, 30 days and all."""
        result = asyncio.run(make_service().get_inflation("bera"))

        assert [row["period"] for row in result["windows"]] == ["1d", "7d", "30d", "all"]
        one_day = result["windows"][0]
        assert one_day["absolute"] == 50.0
        assert one_day["inflationCirculating"] == pytest.approx(1825.0)
        assert result["stale"] is False
        assert result["source"] == "dune"
        assert "warning" not in result

    def test_bgt_single_window(self) -> None:
        """A single window uses BGT emission over BGT supply."""
        result = asyncio.run(make_service().get_inflation("bgt", window_days=1))

        assert len(result["windows"]) == 1
        assert result["windows"][0]["absolute"] == 10.0
        assert result["windows"][0]["inflationCirculating"] == pytest.approx(730.0)

    def test_combined(self) -> None:
        """The combined kind adds both issuances over both supplies."""
        result = asyncio.run(make_service().get_inflation("bera+bgt", window_days=1))

        assert result["windows"][0]["absolute"] == 60.0
        assert result["windows"][0]["inflationCirculating"] == pytest.approx(60 * 365 / 1500 * 100)

    def test_stale_inputs_propagate(self) -> None:
        """A stale input marks the table stale and carries its warning."""
        clock = Mock(return_value=1000.0)
        berachain = FakeFetcher("berachain", supply={"bera": BERA, "bgt": BGT})
        coingecko = FakeFetcher("coingecko")
        service = make_service(berachain=berachain, coingecko=coingecko, clock=clock)

        asyncio.run(service.get_supply("bera"))
        clock.return_value = 1000.0 + 301
        berachain.outcomes["supply"] = {}
        result = asyncio.run(service.get_inflation("bera"))

        assert result["stale"] is True
        assert result["warning"] == STALE_WARNING

    @pytest.mark.parametrize("kind,window", [("eth", None), ("bera", 0)])
    def test_invalid_arguments(self, kind, window) -> None:
        """Unknown kinds and windows below 1 raise ValueError."""
        with pytest.raises(ValueError):
            asyncio.run(make_service().get_inflation(kind, window_days=window))


class TestChains:
    """Test per-chain market data."""

    def test_chain_entry(self) -> None:
        """Market data is joined with supply history and growth rates."""
        entry = asyncio.run(make_service().get_chain("berachain-bera"))

        assert entry["value"]["symbol"] == "BERACHAIN-BERA"
        assert entry["source"] == "coingecko"
        assert len(entry["supplyHistory"]) == 3
        assert entry["growth"]["7d"]["actualDays"] == 10.0
        assert entry["growth"]["genesis"]["rate"] == pytest.approx(365.0)
        assert entry["growth"]["365d"] is None

    def test_missing_history(self) -> None:
        """Without history only growth figures are dropped."""
        coingecko = FakeFetcher("coingecko", market={"berachain-bera": MARKET})
        entry = asyncio.run(make_service(coingecko=coingecko).get_chain("berachain-bera"))

        assert entry["value"]["price"] == 2.5
        assert entry["supplyHistory"] is None
        assert entry["growth"] is None

    def test_missing_market(self) -> None:
        """Without market data the chain is unavailable."""
        coingecko = FakeFetcher("coingecko", history={"berachain-bera": HISTORY})
        with pytest.raises(AllProvidersExhausted):
            asyncio.run(make_service(coingecko=coingecko).get_chain("berachain-bera"))


class TestRefreshAndReport:
    """Test forced refresh and the combined report."""

    def test_force_refresh_all(self) -> None:
        """Every key is refreshed, failures are returned rather than raised."""
        coingecko = FakeFetcher("coingecko", price={"bera": TokenPrice(2.5)})
        service = make_service(coingecko=coingecko)

        outcome = asyncio.run(service.force_refresh_all())

        assert set(outcome) == set(service.chains)
        assert outcome["price:bera"].source == "coingecko"
        assert isinstance(outcome["market:berachain-bera"], AllProvidersExhausted)

    def test_force_refresh_bypasses_ttl(self) -> None:
        """A forced refresh calls providers even with a fresh cache."""
        coingecko = FakeFetcher("coingecko", price={"bera": TokenPrice(2.5)})
        service = make_service(coingecko=coingecko)

        asyncio.run(service.get_price("bera"))
        asyncio.run(service.force_refresh_all())

        assert coingecko.calls.count(("price", "bera")) == 2

    def test_report(self) -> None:
        """The report holds metrics, chains and inflation tables and is JSON-serialisable."""
        report = asyncio.run(make_service().build_report(force=True))

        json.dumps(report)
        assert report["metrics"]["price:bera"]["value"] == {"usd": 2.5, "btc": 0.00003}
        assert report["chains"]["berachain-bera"]["growth"]["genesis"] is not None
        assert set(report["inflation"]) == {"bera", "bgt", "bera+bgt"}
        assert "warning" not in report

    def test_report_with_failures(self) -> None:
        """Unavailable metrics become error entries instead of failing the report."""
        berachain = FakeFetcher("berachain", supply={"bera": BERA})
        coingecko = FakeFetcher("coingecko", price={"bera": TokenPrice(2.5)})
        report = asyncio.run(
            make_service(berachain=berachain, coingecko=coingecko).build_report()
        )

        assert "error" in report["metrics"]["supply:bgt"]
        assert "error" in report["chains"]["berachain-bera"]
        assert "error" not in report["inflation"]["bera"]
        assert "error" in report["inflation"]["bgt"]
        assert "error" in report["inflation"]["bera+bgt"]

    def test_report_warns_when_stale(self) -> None:
        """Any stale metric adds the top-level warning."""
        clock = Mock(return_value=1000.0)
        coingecko = FakeFetcher("coingecko", price={"bera": TokenPrice(2.5)})
        service = make_service(coingecko=coingecko, clock=clock)

        asyncio.run(service.get_price("bera"))
        clock.return_value = 5000.0
        coingecko.outcomes["price"] = {}
        service.fetchers["coinpaprika"].outcomes["price"] = {}
        report = asyncio.run(service.build_report())

        assert report["metrics"]["price:bera"]["stale"] is True
        assert report["warning"] == STALE_WARNING
