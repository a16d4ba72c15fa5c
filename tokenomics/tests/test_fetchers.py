"""Unit tests for the provider adapters."""

import asyncio

import httpx
import pytest

from tokenomics.src.BackoffFetcher import BackoffFetcher
from tokenomics.src.errors import ConfigError, ParseError, TerminalFetchError
from tokenomics.src.fetchers import (
    BerachainSupplyFetcher,
    CoinGeckoFetcher,
    CoinpaprikaFetcher,
    DuneFetcher,
    get_available_fetchers,
    get_fetcher,
)
from tokenomics.src.JobPoller import AsyncJobPoller, JobState
from tokenomics.src.records import SupplySnapshot, TokenPrice


async def no_sleep(seconds: float) -> None:
    return None


def call(fetcher_cls, method: str, *args, api_key=None, routes=None):
    """Call one adapter method against a mocked transport.

    `routes` maps "METHOD /path" to an httpx.Response. Returns the result (or
    the raised exception) and the list of requests sent.
    """
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        key = f"{request.method} {request.url.path}"
        if key not in routes:
            return httpx.Response(404, text=f"no route {key}")
        return routes[key]

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            backoff = BackoffFetcher(client, sleep=no_sleep)
            fetcher = fetcher_cls(api_key=api_key, backoff=backoff)
            return await getattr(fetcher, method)(*args)

    try:
        return asyncio.run(scenario()), requests
    except Exception as e:
        return e, requests


class TestRegistry:
    """Test the fetcher registry."""

    def test_available_fetchers(self) -> None:
        """All adapters register themselves on import."""
        assert get_available_fetchers() == ["berachain", "coingecko", "coinpaprika", "dune"]

    def test_filter_by_metric(self) -> None:
        """Fetchers can be listed by capability."""
        assert get_available_fetchers("supply") == ["berachain", "coingecko"]
        assert get_available_fetchers("price") == ["coingecko", "coinpaprika"]
        assert get_available_fetchers("emissions") == ["dune"]

    def test_get_fetcher(self) -> None:
        """get_fetcher builds an instance with the given key."""
        fetcher = get_fetcher("dune", api_key="secret")
        assert isinstance(fetcher, DuneFetcher)
        assert fetcher.has_api_key

    def test_unknown_fetcher(self) -> None:
        """Unknown names raise ConfigError listing the available ones."""
        with pytest.raises(ConfigError, match="Unknown fetcher 'nope'"):
            get_fetcher("nope")

    def test_unsupported_metric(self) -> None:
        """Calling a metric the fetcher does not provide raises ConfigError."""
        error, requests = call(BerachainSupplyFetcher, "fetch_price", "bera", routes={})
        assert isinstance(error, ConfigError)
        assert requests == []


class TestBerachainSupplyFetcher:
    """Test the Berachain supply adapter."""

    def test_fetch_supply(self) -> None:
        """Supply stats are parsed into a SupplySnapshot."""
        result, requests = call(
            BerachainSupplyFetcher,
            "fetch_supply",
            "BERA",
            routes={
                "GET /api/stats/bera": httpx.Response(
                    200, json={"circulatingSupply": 120_000_000, "totalSupply": 500_000_000}
                )
            },
        )

        assert result == SupplySnapshot(120_000_000.0, 500_000_000.0)
        assert requests[0].url.host == "supply-api.berachain.com"

    def test_unsupported_token(self) -> None:
        """Only bera and bgt are served."""
        error, requests = call(BerachainSupplyFetcher, "fetch_supply", "eth", routes={})
        assert isinstance(error, ParseError)
        assert requests == []

    def test_invalid_figures(self) -> None:
        """A zero supply is rejected."""
        error, _ = call(
            BerachainSupplyFetcher,
            "fetch_supply",
            "bgt",
            routes={
                "GET /api/stats/bgt": httpx.Response(
                    200, json={"circulatingSupply": 0, "totalSupply": 10}
                )
            },
        )
        assert isinstance(error, ParseError)


class TestCoinGeckoFetcher:
    """Test the CoinGecko adapter."""

    def test_fetch_price(self) -> None:
        """Simple price returns USD and BTC quotes."""
        result, requests = call(
            CoinGeckoFetcher,
            "fetch_price",
            "bera",
            routes={
                "GET /api/v3/simple/price": httpx.Response(
                    200, json={"berachain-bera": {"usd": 2.5, "btc": 0.00003}}
                )
            },
        )

        assert result == TokenPrice(usd=2.5, btc=0.00003)
        assert requests[0].url.params["ids"] == "berachain-bera"
        assert requests[0].url.host == "api.coingecko.com"

    def test_missing_price(self) -> None:
        """An empty answer raises ParseError."""
        error, _ = call(
            CoinGeckoFetcher,
            "fetch_price",
            "bera",
            routes={"GET /api/v3/simple/price": httpx.Response(200, json={})},
        )
        assert isinstance(error, ParseError)

    def test_pro_key(self) -> None:
        """Pro keys use the pro host and header."""
        _, requests = call(
            CoinGeckoFetcher,
            "fetch_price",
            "bera",
            api_key="pro-key",
            routes={
                "GET /api/v3/simple/price": httpx.Response(
                    200, json={"berachain-bera": {"usd": 2.5}}
                )
            },
        )

        assert requests[0].url.host == "pro-api.coingecko.com"
        assert requests[0].headers["x-cg-pro-api-key"] == "pro-key"

    def test_demo_key(self) -> None:
        """demo: keys use the free host and the demo header."""
        fetcher = CoinGeckoFetcher(api_key="demo:CG-abc")

        assert fetcher.base_url == CoinGeckoFetcher.BASE_URL_FREE
        assert fetcher.headers == {"x-cg-demo-api-key": "CG-abc"}

    def test_fetch_market(self) -> None:
        """Coin market data is parsed into ChainMarketData."""
        result, _ = call(
            CoinGeckoFetcher,
            "fetch_market",
            "ethereum",
            routes={
                "GET /api/v3/coins/ethereum": httpx.Response(
                    200,
                    json={
                        "market_data": {
                            "current_price": {"usd": 3000.0},
                            "market_cap": {"usd": 360e9},
                            "circulating_supply": 120e6,
                            "total_supply": 120e6,
                            "max_supply": None,
                            "last_updated": "2025-06-02T00:00:00.000Z",
                        }
                    },
                )
            },
        )

        assert result.symbol == "ETHEREUM"
        assert result.price == 3000.0
        assert result.circulating_supply == 120e6
        assert result.max_supply is None
        assert result.last_updated == "2025-06-02T00:00:00.000Z"

    def test_fetch_market_incomplete(self) -> None:
        """Missing price data raises ParseError."""
        error, _ = call(
            CoinGeckoFetcher,
            "fetch_market",
            "ethereum",
            routes={
                "GET /api/v3/coins/ethereum": httpx.Response(
                    200, json={"market_data": {"market_cap": {"usd": 1.0}}}
                )
            },
        )
        assert isinstance(error, ParseError)

    def test_fetch_supply(self) -> None:
        """Supply comes from coin market data."""
        result, _ = call(
            CoinGeckoFetcher,
            "fetch_supply",
            "bgt",
            routes={
                "GET /api/v3/coins/berachain-bgt": httpx.Response(
                    200,
                    json={"market_data": {"circulating_supply": 10.0, "total_supply": 20.0}},
                )
            },
        )
        assert result == SupplySnapshot(10.0, 20.0)

    def test_fetch_supply_history(self) -> None:
        """Market chart is converted to daily supply estimates."""
        day = 86_400_000
        result, requests = call(
            CoinGeckoFetcher,
            "fetch_supply_history",
            "solana",
            routes={
                "GET /api/v3/coins/solana/market_chart": httpx.Response(
                    200,
                    json={
                        "prices": [[0, 2.0], [day, 4.0]],
                        "market_caps": [[0, 200.0], [day, 440.0]],
                    },
                )
            },
        )

        assert [p.supply for p in result] == [100.0, 110.0]
        assert requests[0].url.params["days"] == "365"

    def test_http_error(self) -> None:
        """A 401 surfaces as TerminalFetchError."""
        error, requests = call(
            CoinGeckoFetcher,
            "fetch_price",
            "bera",
            routes={"GET /api/v3/simple/price": httpx.Response(401, text="unauthorized")},
        )
        assert isinstance(error, TerminalFetchError)
        assert len(requests) == 1


class TestCoinpaprikaFetcher:
    """Test the Coinpaprika adapter."""

    def test_fetch_price(self) -> None:
        """Ticker quotes return USD and BTC prices."""
        result, requests = call(
            CoinpaprikaFetcher,
            "fetch_price",
            "bera",
            routes={
                "GET /v1/tickers/bera-berachain": httpx.Response(
                    200,
                    json={"quotes": {"USD": {"price": 2.4}, "BTC": {"price": 0.00002}}},
                )
            },
        )

        assert result == TokenPrice(usd=2.4, btc=0.00002)
        assert requests[0].url.params["quotes"] == "USD,BTC"

    def test_unknown_coin(self) -> None:
        """Tokens without a Coinpaprika id raise ParseError."""
        error, requests = call(CoinpaprikaFetcher, "fetch_price", "bgt", routes={})
        assert isinstance(error, ParseError)
        assert requests == []

    def test_missing_quote(self) -> None:
        """A ticker without a USD quote raises ParseError."""
        error, _ = call(
            CoinpaprikaFetcher,
            "fetch_price",
            "bera",
            routes={"GET /v1/tickers/bera-berachain": httpx.Response(200, json={"quotes": {}})},
        )
        assert isinstance(error, ParseError)


ROWS = [
    {"period": "2025-06-01 00:00:00.000 UTC", "burnt_amount": 50, "daily_emission": 10},
    {"period": "2025-06-02 00:00:00.000 UTC", "burnt_amount": 60, "daily_emission": 11},
]


class TestDuneFetcher:
    """Test the Dune query adapter."""

    def test_requires_api_key(self) -> None:
        """Dune calls without a key raise ConfigError before any request."""
        error, requests = call(DuneFetcher, "execute", "4740951", routes={})
        assert isinstance(error, ConfigError)
        assert requests == []

    def test_execute(self) -> None:
        """Execute posts the query and returns the execution handle."""
        result, requests = call(
            DuneFetcher,
            "execute",
            "4740951",
            api_key="secret",
            routes={
                "POST /api/v1/query/4740951/execute": httpx.Response(
                    200, json={"execution_id": "01HX", "state": "QUERY_STATE_PENDING"}
                )
            },
        )

        assert result.id == "01HX"
        assert result.query_id == "4740951"
        assert result.state == JobState.PENDING
        assert requests[0].headers["x-dune-api-key"] == "secret"

    @pytest.mark.parametrize(
        "payload,state",
        [
            ({"state": "QUERY_STATE_EXECUTING"}, JobState.EXECUTING),
            ({"state": "QUERY_STATE_CANCELLED"}, JobState.FAILED),
            (
                {"state": "QUERY_STATE_COMPLETED", "result": {"rows": ROWS}},
                JobState.COMPLETED,
            ),
        ],
    )
    def test_get_status_states(self, payload, state) -> None:
        """Dune execution states map onto JobState."""
        result, _ = call(
            DuneFetcher,
            "get_status",
            "01HX",
            api_key="secret",
            routes={"GET /api/v1/execution/01HX/results": httpx.Response(200, json=payload)},
        )
        assert result.state == state

    def test_get_status_failed_diagnostics(self) -> None:
        """A failed execution carries the provider error payload."""
        result, _ = call(
            DuneFetcher,
            "get_status",
            "01HX",
            api_key="secret",
            routes={
                "GET /api/v1/execution/01HX/results": httpx.Response(
                    200,
                    json={"state": "QUERY_STATE_FAILED", "error": {"type": "FAILED_TYPE_TIMEOUT"}},
                )
            },
        )
        assert result.diagnostics["error"] == {"type": "FAILED_TYPE_TIMEOUT"}

    def test_unknown_state(self) -> None:
        """An unrecognised state raises ParseError."""
        error, _ = call(
            DuneFetcher,
            "get_status",
            "01HX",
            api_key="secret",
            routes={
                "GET /api/v1/execution/01HX/results": httpx.Response(200, json={"state": "??"})
            },
        )
        assert isinstance(error, ParseError)

    def test_fetch_latest(self) -> None:
        """Latest results are parsed and sorted most recent first."""
        result, _ = call(
            DuneFetcher,
            "fetch_latest",
            "4740951",
            api_key="secret",
            routes={
                "GET /api/v1/query/4740951/results": httpx.Response(
                    200,
                    json={
                        "execution_id": "01HY",
                        "execution_ended_at": "2025-06-02T01:00:00Z",
                        "result": {"rows": ROWS},
                    },
                )
            },
        )

        assert [r.period.isoformat() for r in result.rows] == ["2025-06-02", "2025-06-01"]
        assert result.execution_id == "01HY"
        assert result.ended_at == "2025-06-02T01:00:00Z"

    def test_with_job_poller(self) -> None:
        """The adapter drives a full submit-then-poll cycle."""
        polls = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"execution_id": "01HX", "state": "QUERY_STATE_PENDING"})
            polls.append(request)
            if len(polls) < 2:
                return httpx.Response(200, json={"state": "QUERY_STATE_EXECUTING"})
            return httpx.Response(
                200,
                json={
                    "state": "QUERY_STATE_COMPLETED",
                    "execution_ended_at": "2025-06-02T01:00:00Z",
                    "result": {"rows": ROWS},
                },
            )

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                dune = DuneFetcher(api_key="secret", backoff=BackoffFetcher(client, sleep=no_sleep))
                poller = AsyncJobPoller(dune, sleep=no_sleep)
                return await poller.run("4740951")

        result = asyncio.run(scenario())

        assert len(polls) == 2
        assert result.execution_id == "01HX"
        assert result.rows[0].period.isoformat() == "2025-06-02"
