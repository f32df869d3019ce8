"""
CoinGecko REST client for the edge service.
"""

from typing import Any, Dict, Optional

from shared.logging import get_logger

from service_edge.app.ratelimit.fetch_gateway import FetchGateway


DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"
DEFAULT_CURRENCY = "usd"
DEFAULT_ORDER = "market_cap_desc"

# Detail pages are user facing single lookups; list pages can wait
LIST_PRIORITY = 0
DETAIL_PRIORITY = 1


class CoinGeckoClient:
    """Builds CoinGecko v3 requests and sends them through the fetch gateway."""

    def __init__(
        self,
        gateway: FetchGateway,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
    ):
        self.gateway = gateway
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.logger = get_logger("edge.coingecko")

    async def get_coins(self, page: int = 1, per_page: int = 20) -> Any:
        """Fetch a page of coins ordered by market cap."""
        params = {
            "vs_currency": DEFAULT_CURRENCY,
            "order": DEFAULT_ORDER,
            "per_page": per_page,
            "page": page,
            "sparkline": "false",
            "locale": "en",
        }
        return await self._get("/coins/markets", params, priority=LIST_PRIORITY)

    async def get_coin_detail(self, coin_id: str) -> Any:
        """Fetch a single coin with market data."""
        params = {
            "localization": "false",
            "tickers": "false",
            "market_data": "true",
            "community_data": "false",
            "developer_data": "false",
            "sparkline": "false",
        }
        return await self._get(f"/coins/{coin_id}", params, priority=DETAIL_PRIORITY)

    async def get_price_history(self, coin_id: str, days: int = 7) -> Any:
        """Fetch daily price, market cap and volume series."""
        params = {
            "vs_currency": DEFAULT_CURRENCY,
            "days": days,
            "interval": "daily",
        }
        return await self._get(f"/coins/{coin_id}/market_chart", params, priority=DETAIL_PRIORITY)

    async def search(self, query: str) -> Any:
        """Search coins, exchanges and categories by name."""
        return await self._get("/search", {"query": query}, priority=LIST_PRIORITY)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    async def _get(
        self,
        path: str,
        params: Dict[str, Any],
        *,
        priority: int,
    ) -> Any:
        url = f"{self.base_url}{path}"
        response = await self.gateway.rate_limited_fetch(
            url,
            priority=priority,
            params=params,
            headers=self._headers(),
        )
        self.logger.debug("Upstream response received", url=url, status_code=response.status_code)
        return response.json()
