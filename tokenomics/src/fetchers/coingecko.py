"""CoinGecko fetcher.

Endpoints:
    - /simple/price?ids={id}&vs_currencies=usd,btc (spot price)
    - /coins/{id}?market_data=true (market data and supply)
    - /coins/{id}/market_chart?vs_currency=usd&days=365&interval=daily
Rate Limit: 30 calls/min (free), higher with API key
BERA Support: Yes (id: "berachain-bera")
"""

import logging

from ..errors import ParseError
from ..records import (
    ChainMarketData,
    SupplyHistoryPoint,
    SupplySnapshot,
    TokenPrice,
    supply_history_from_market_chart,
)
from .base import HISTORY, MARKET, PRICE, SUPPLY, BaseFetcher, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinGeckoFetcher(BaseFetcher):
    """Fetcher for CoinGecko API.

    Provides prices, supply and market charts for every tracked chain.
    Tokens may be given as symbols from COIN_IDS or as raw CoinGecko ids.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx
    """

    name = "coingecko"
    capabilities = frozenset({PRICE, SUPPLY, MARKET, HISTORY})
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"
    HISTORY_DAYS = 365

    # Map token symbols to CoinGecko IDs
    COIN_IDS = {
        "bera": "berachain-bera",
        "bgt": "berachain-bgt",
        "btc": "bitcoin",
        "eth": "ethereum",
        "sol": "solana",
        "sui": "sui",
        "avax": "avalanche-2",
        "bnb": "binancecoin",
        "sei": "sei-network",
        "near": "near",
        "apt": "aptos",
    }

    def __init__(self, api_key=None, backoff=None):
        """Initialize with optional demo: prefix handling."""
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]  # Strip "demo:" prefix
        super().__init__(api_key=api_key, backoff=backoff)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        # Demo keys use free URL, pro keys use pro URL
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    @property
    def headers(self) -> dict[str, str] | None:
        """Return the API key header, if a key is configured."""
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return {header_name: self.api_key}

    def coin_id(self, token: str) -> str:
        """Resolve a token symbol to its CoinGecko id (ids pass through)."""
        return self.COIN_IDS.get(token.lower(), token.lower())

    async def fetch_price(self, token: str) -> TokenPrice:
        """Fetch USD and BTC price.

        :param token: Token symbol or CoinGecko id.
        :returns: TokenPrice.
        :raises ParseError: If the coin or its USD quote is missing.
        """
        coin_id = self.coin_id(token)
        response = await self._get(
            f"{self.base_url}/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd,btc"},
            headers=self.headers,
        )
        data = self._json(response)
        quotes = data.get(coin_id) if isinstance(data, dict) else None
        if not isinstance(quotes, dict) or quotes.get("usd") is None:
            raise ParseError(f"No USD price for {coin_id}: {data}", provider=self.name)
        try:
            btc = quotes.get("btc")
            return TokenPrice(
                usd=float(quotes["usd"]),
                btc=float(btc) if btc is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise ParseError(f"Bad price for {coin_id}: {e}", provider=self.name) from e

    async def _market_data(self, coin_id: str) -> dict:
        response = await self._get(
            f"{self.base_url}/coins/{coin_id}",
            params={
                "localization": "false",
                "tickers": "false",
                "market_data": "true",
                "community_data": "false",
                "developer_data": "false",
            },
            headers=self.headers,
        )
        data = self._json(response)
        market_data = data.get("market_data") if isinstance(data, dict) else None
        if not isinstance(market_data, dict):
            raise ParseError(f"No market data for {coin_id}", provider=self.name)
        return market_data

    async def fetch_supply(self, token: str) -> SupplySnapshot:
        """Fetch circulating and total supply from coin market data.

        :param token: Token symbol or CoinGecko id.
        :returns: Validated SupplySnapshot.
        """
        market_data = await self._market_data(self.coin_id(token))
        return SupplySnapshot.from_payload(
            {
                "circulatingSupply": market_data.get("circulating_supply"),
                "totalSupply": market_data.get("total_supply"),
            },
            source=self.name,
        )

    async def fetch_market(self, chain_id: str) -> ChainMarketData:
        """Fetch current market data of a chain.

        :param chain_id: Token symbol or CoinGecko id.
        :returns: ChainMarketData.
        :raises ParseError: If price, market cap or circulating supply is missing.
        """
        coin_id = self.coin_id(chain_id)
        market_data = await self._market_data(coin_id)
        try:
            total = market_data.get("total_supply")
            max_supply = market_data.get("max_supply")
            return ChainMarketData(
                symbol=chain_id.upper(),
                price=float(market_data["current_price"]["usd"]),
                market_cap=float(market_data["market_cap"]["usd"]),
                circulating_supply=float(market_data["circulating_supply"]),
                total_supply=float(total) if total is not None else None,
                max_supply=float(max_supply) if max_supply is not None else None,
                last_updated=market_data.get("last_updated"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(
                f"Failed to parse market data for {coin_id}: {e}",
                provider=self.name,
            ) from e

    async def fetch_supply_history(self, chain_id: str) -> tuple[SupplyHistoryPoint, ...]:
        """Estimate daily supply over the last year as market cap / price.

        :param chain_id: Token symbol or CoinGecko id.
        :returns: Points sorted ascending by date.
        """
        coin_id = self.coin_id(chain_id)
        response = await self._get(
            f"{self.base_url}/coins/{coin_id}/market_chart",
            params={"vs_currency": "usd", "days": str(self.HISTORY_DAYS), "interval": "daily"},
            headers=self.headers,
        )
        history = supply_history_from_market_chart(self._json(response))
        logger.debug(f"[coingecko] {coin_id}: {len(history)} supply history points")
        return history
