"""Coinpaprika fetcher.

Endpoint: https://api.coinpaprika.com/v1/tickers/{coin_id}?quotes=USD,BTC
Rate Limit: 20,000 calls/month (free tier)
BERA Support: Yes (id: bera-berachain)
"""

import logging

from ..errors import ParseError
from ..records import TokenPrice
from .base import PRICE, BaseFetcher, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinpaprikaFetcher(BaseFetcher):
    """Fetcher for Coinpaprika API.

    Secondary price source. No API key required for basic usage.
    """

    name = "coinpaprika"
    capabilities = frozenset({PRICE})
    BASE_URL = "https://api.coinpaprika.com/v1"

    # Map token symbols to Coinpaprika IDs
    # Format: {symbol}-{name}
    COIN_IDS = {
        "bera": "bera-berachain",
        "btc": "btc-bitcoin",
        "eth": "eth-ethereum",
        "sol": "sol-solana",
        "avax": "avax-avalanche",
        "bnb": "bnb-binance-coin",
        "sui": "sui-sui",
        "near": "near-near-protocol",
        "apt": "apt-aptos",
        "sei": "sei-sei",
    }

    async def fetch_price(self, token: str) -> TokenPrice:
        """Fetch USD and BTC price from the ticker endpoint.

        :param token: Token symbol (e.g., "bera").
        :returns: TokenPrice.
        :raises ParseError: If the token is unknown or the USD quote is missing.
        """
        coin_id = self.COIN_IDS.get(token.lower())
        if not coin_id:
            raise ParseError(f"Unknown coin: {token}", provider=self.name)

        response = await self._get(
            f"{self.BASE_URL}/tickers/{coin_id}", params={"quotes": "USD,BTC"}
        )
        data = self._json(response)

        if not isinstance(data, dict) or "error" in data:
            raise ParseError(f"API error for {coin_id}: {data}", provider=self.name)

        quotes = data.get("quotes") or {}
        usd = (quotes.get("USD") or {}).get("price")
        if usd is None:
            raise ParseError(f"Quote USD not available for {coin_id}", provider=self.name)
        btc = (quotes.get("BTC") or {}).get("price")

        try:
            return TokenPrice(usd=float(usd), btc=float(btc) if btc is not None else None)
        except (TypeError, ValueError) as e:
            raise ParseError(f"Failed to parse quote for {coin_id}: {e}", provider=self.name) from e
