"""Berachain supply API fetcher.

Endpoint: https://supply-api.berachain.com/api/stats/{token}
Tokens: bera, bgt
API Key: Not required
"""

import logging

from ..errors import ParseError
from ..records import SupplySnapshot
from .base import SUPPLY, BaseFetcher, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class BerachainSupplyFetcher(BaseFetcher):
    """Fetcher for the official Berachain supply statistics."""

    name = "berachain"
    capabilities = frozenset({SUPPLY})
    BASE_URL = "https://supply-api.berachain.com/api/stats"
    TOKENS = frozenset({"bera", "bgt"})

    async def fetch_supply(self, token: str) -> SupplySnapshot:
        """Fetch circulating and total supply.

        :param token: "bera" or "bgt".
        :returns: Validated SupplySnapshot.
        :raises ParseError: If the token is unsupported or figures are invalid.
        """
        token = token.lower()
        if token not in self.TOKENS:
            raise ParseError(f"Unsupported token: {token}", provider=self.name)
        response = await self._get(f"{self.BASE_URL}/{token}")
        snapshot = SupplySnapshot.from_payload(self._json(response), source=self.name)
        logger.debug(
            f"[berachain] {token} supply: circulating={snapshot.circulating_supply:.2f}, "
            f"total={snapshot.total_supply:.2f}"
        )
        return snapshot
