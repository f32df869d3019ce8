"""
Market data service responsible for serving CoinGecko resources from cache.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

import httpx

from shared.errors import EdgeException
from shared.logging import get_logger

from service_edge.app.adapters.coingecko_client import CoinGeckoClient
from service_edge.app.adapters.kv_mirror import KVMirror
from service_edge.app.caching.ttl_cache import CACHE_TTL, TTLCache, WarmEntry, make_cache_key

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


HIT = "HIT"
MISS = "MISS"
STALE = "STALE"


@dataclass(frozen=True)
class CachedResult:
    """Payload plus how it was obtained."""

    data: Any
    cache_status: str
    ttl_seconds: float


class MarketDataService:
    """Read-through access to coins, coin details, price history and search.

    Lookups go cache -> KV mirror -> upstream. Concurrent misses for the
    same key share one upstream call. When the upstream fails and an
    expired copy is still around, the expired copy is served instead.
    """

    def __init__(
        self,
        cache: TTLCache,
        client: CoinGeckoClient,
        *,
        mirror: Optional[KVMirror] = None,
        metrics: Optional["MetricsCollector"] = None,
        warm_pages: int = 1,
        warm_per_page: int = 20,
    ) -> None:
        self.cache = cache
        self.client = client
        self.mirror = mirror
        self.metrics = metrics
        self.warm_pages = warm_pages
        self.warm_per_page = warm_per_page
        self.logger = get_logger("edge.market_data")

    async def get_coins(self, page: int = 1, per_page: int = 20) -> CachedResult:
        key = make_cache_key("coins", {"page": page, "per_page": per_page})
        return await self._load(key, "coins", lambda: self.client.get_coins(page, per_page))

    async def get_coin_detail(self, coin_id: str) -> CachedResult:
        key = make_cache_key("coin-detail", {"id": coin_id})
        return await self._load(key, "coin-detail", lambda: self.client.get_coin_detail(coin_id))

    async def get_price_history(self, coin_id: str, days: int = 7) -> CachedResult:
        key = make_cache_key("price-history", {"id": coin_id, "days": days})
        return await self._load(key, "price-history", lambda: self.client.get_price_history(coin_id, days))

    async def search(self, query: str) -> CachedResult:
        key = make_cache_key("search", {"query": query})
        return await self._load(key, "search", lambda: self.client.search(query))

    async def warm_popular(self) -> Dict[str, Any]:
        """Pre-populate the first coin list pages."""
        ttl = CACHE_TTL["coins"]
        entries = []
        for page in range(1, self.warm_pages + 1):
            key = make_cache_key("coins", {"page": page, "per_page": self.warm_per_page})
            fetch = (lambda page=page: self.client.get_coins(page, self.warm_per_page))
            entries.append(WarmEntry(key=key, fetcher=self._loader(key, ttl, fetch), ttl_seconds=ttl))
        return await self.cache.warm_cache(entries)

    async def close(self) -> None:
        if self.mirror is not None:
            await self.mirror.close()

    async def _load(
        self,
        key: str,
        resource_type: str,
        fetch: Callable[[], Awaitable[Any]],
    ) -> CachedResult:
        ttl = CACHE_TTL[resource_type]
        status = HIT if self.cache.has(key) else MISS

        try:
            data = await self.cache.dedupe_request(key, self._loader(key, ttl, fetch), ttl)
        except (EdgeException, httpx.HTTPError) as e:
            stale = self.cache.get_stale(key)
            if stale is None:
                raise
            self.logger.warning("Serving stale data after upstream failure", key=key, error=str(e))
            if self.metrics:
                self.metrics.increment_counter("cache_stale_served_total", cache_type=resource_type)
            return CachedResult(stale, STALE, ttl)

        return CachedResult(data, status, ttl)

    def _loader(
        self,
        key: str,
        ttl: float,
        fetch: Callable[[], Awaitable[Any]],
    ) -> Callable[[], Awaitable[Any]]:
        async def _load_through_mirror() -> Any:
            if self.mirror is not None:
                mirrored = await self.mirror.get(key)
                if mirrored is not None:
                    return mirrored

            data = await fetch()
            if self.mirror is not None:
                await self.mirror.set(key, data, ttl)
            return data

        return _load_through_mirror
