"""
Edge service for the CoinGecko market data API.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import Query
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import UpstreamError

from service_edge.app.adapters.coingecko_client import CoinGeckoClient
from service_edge.app.adapters.kv_mirror import KVMirror
from service_edge.app.caching.ttl_cache import TTLCache
from service_edge.app.market_data.service import CachedResult, MarketDataService
from service_edge.app.ratelimit.fetch_gateway import FetchGateway, GatewayConfig


NO_CACHE_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}
RATE_LIMITED_MESSAGE = "API rate limit exceeded. Please try again later."


def format_container_age(seconds: float) -> str:
    """Render an age as ``"<minutes>m <seconds>s"``."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}m {seconds % 60}s"


class EdgeService(BaseService):
    """Caching edge service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        kv_mirror: Optional[KVMirror] = None,
    ):
        super().__init__("edge", 8000, config or get_config("edge", 8000))

        self.cache = TTLCache(
            default_ttl_seconds=self.config.cache_default_ttl_seconds,
            max_entries=self.config.cache_max_entries,
            max_size_bytes=self.config.cache_max_size_bytes,
            stale_retention_seconds=self.config.cache_stale_retention_seconds,
            metrics=self.metrics,
        )
        self.gateway = FetchGateway(
            GatewayConfig(
                max_requests_per_window=self.config.rate_limit_max_requests,
                window_seconds=self.config.rate_limit_window_seconds,
                max_retries=self.config.rate_limit_max_retries,
                base_backoff_seconds=self.config.rate_limit_base_backoff_seconds,
                max_backoff_seconds=self.config.rate_limit_max_backoff_seconds,
                max_queue_size=self.config.rate_limit_max_queue_size,
                max_concurrent=self.config.rate_limit_max_concurrent,
            ),
            client=http_client,
            timeout=self.config.upstream_timeout_seconds,
            metrics=self.metrics,
        )

        if kv_mirror is None and self.config.redis_url:
            kv_mirror = KVMirror(self.config.redis_url)
        self.kv_mirror = kv_mirror

        self.coingecko_client = CoinGeckoClient(
            self.gateway,
            base_url=self.config.upstream_base_url,
            api_key=self.config.upstream_api_key,
        )
        self.market_data_service = MarketDataService(
            self.cache,
            self.coingecko_client,
            mirror=self.kv_mirror,
            metrics=self.metrics,
            warm_pages=self.config.cache_warm_pages,
            warm_per_page=self.config.cache_warm_per_page,
        )

        @self.app.on_event("startup")
        async def _startup():
            if self.config.cache_sweep_interval_seconds > 0:
                self.cache.start_sweeper(self.config.cache_sweep_interval_seconds)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.cache.stop_sweeper()
            await self.gateway.close()
            await self.market_data_service.close()

        self._setup_edge_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.edge_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {"cache": "ok", "rate_limiter": self.gateway.get_stats()["status"].lower()}
        if self.kv_mirror is None:
            dependencies["kv"] = "disabled"
        else:
            kv_stats = await self.kv_mirror.get_stats()
            dependencies["kv"] = "ok" if kv_stats.get("available") else "unavailable"
        return dependencies

    def _cached_response(self, result: CachedResult) -> JSONResponse:
        ttl = int(result.ttl_seconds)
        return JSONResponse(
            content=result.data,
            headers={
                "Cache-Control": f"public, s-maxage={ttl}, stale-while-revalidate={ttl * 2}",
                "X-Cache": result.cache_status,
            },
        )

    def _error_response(self, exc: Exception, not_found: str, failure: str, **context: Any) -> JSONResponse:
        status = exc.status_code if isinstance(exc, UpstreamError) else None
        if status == 404:
            return JSONResponse(status_code=404, content={"error": not_found})
        if status == 429:
            self.logger.warning("Upstream rate limit exceeded", **context)
            return JSONResponse(status_code=429, content={"error": RATE_LIMITED_MESSAGE})

        self.logger.error(failure, error=str(exc), **context)
        self.metrics.record_error(getattr(exc, "code", "INTERNAL_ERROR"))
        return JSONResponse(status_code=500, content={"error": failure})

    def _setup_edge_routes(self):
        """Set up edge routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "edge",
                "message": "Coin Edge - CoinGecko caching gateway",
                "version": "1.0.0"
            }

        @self.app.get("/api/coins")
        async def get_coins(
            page: int = Query(1, ge=1),
            per_page: int = Query(20, ge=1, le=250),
        ):
            """List coins ordered by market cap."""
            try:
                result = await self.market_data_service.get_coins(page, per_page)
            except Exception as e:
                return self._error_response(
                    e, "Coins not found", "Failed to fetch coins", page=page, per_page=per_page
                )
            return self._cached_response(result)

        @self.app.get("/api/coins/{coin_id}")
        async def get_coin_detail(coin_id: str):
            """Get a single coin."""
            try:
                result = await self.market_data_service.get_coin_detail(coin_id)
            except Exception as e:
                return self._error_response(
                    e, "Coin not found", "Failed to fetch coin details", coin_id=coin_id
                )
            return self._cached_response(result)

        @self.app.get("/api/coins/{coin_id}/history")
        async def get_price_history(coin_id: str, days: int = Query(7, ge=1, le=365)):
            """Get daily price history for a coin."""
            try:
                result = await self.market_data_service.get_price_history(coin_id, days)
            except Exception as e:
                return self._error_response(
                    e,
                    "Price history not found for this coin",
                    "Failed to fetch price history",
                    coin_id=coin_id,
                    days=days
                )
            return self._cached_response(result)

        @self.app.get("/api/search")
        async def search(query: str = Query(..., min_length=1)):
            """Search coins by name or symbol."""
            try:
                result = await self.market_data_service.search(query)
            except Exception as e:
                return self._error_response(e, "No results", "Failed to search coins", query=query)
            return self._cached_response(result)

        @self.app.get("/api/cache/stats")
        async def get_cache_stats():
            """Get cache, KV mirror and rate limiter statistics."""
            if self.kv_mirror is None:
                kv_stats: Dict[str, Any] = {"available": False}
            else:
                kv_stats = await self.kv_mirror.get_stats()

            return JSONResponse(
                content={
                    "cache": self.cache.get_stats(),
                    "kv": kv_stats,
                    "rate_limiter": self.gateway.get_stats(),
                    "container_age": format_container_age(time.time() - self._start_time),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                headers=NO_CACHE_HEADERS,
            )

        @self.app.get("/api/cache/items")
        async def get_cache_items():
            """List cached keys with size and remaining TTL."""
            return JSONResponse(content=self.cache.get_cache_items(), headers=NO_CACHE_HEADERS)

        @self.app.get("/api/cache/kv-keys")
        async def get_kv_keys():
            """List keys held by the KV mirror."""
            if self.kv_mirror is None:
                content = {"available": False, "keys": [], "error": "KV not configured"}
            else:
                content = await self.kv_mirror.list_keys()
            return JSONResponse(content=content, headers=NO_CACHE_HEADERS)

        @self.app.post("/api/cache/warm")
        async def warm_cache():
            """Pre-populate popular coin pages."""
            summary = await self.market_data_service.warm_popular()
            return {
                "message": "Cache warmed successfully",
                "summary": summary
            }

        @self.app.delete("/api/cache")
        async def clear_cache():
            """Drop every cached entry and reset statistics."""
            self.cache.clear()
            self.logger.info("Cache cleared")
            return {"message": "Cache cleared"}


def create_app():
    """Create FastAPI application."""
    service = EdgeService()
    return service.app


if __name__ == "__main__":
    service = EdgeService()
    service.run()
