"""
Unit tests for the edge service HTTP routes.
"""

import re
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from service_edge.app.main import EdgeService, format_container_age
from shared.config import get_config


COINS = [{"id": "bitcoin", "symbol": "btc"}, {"id": "ethereum", "symbol": "eth"}]


def upstream_handler(request: httpx.Request) -> httpx.Response:
    """Stub CoinGecko API keyed by request path."""
    path = request.url.path
    if path.endswith("/coins/markets"):
        if request.url.params.get("page") == "99":
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json=COINS)
    if path.endswith("/coins/missing"):
        return httpx.Response(404, json={"error": "coin not found"})
    if path.endswith("/market_chart"):
        return httpx.Response(429, headers={"Retry-After": "0"})
    if path.endswith("/search"):
        return httpx.Response(200, json={"coins": [{"id": request.url.params["query"]}]})
    if "/coins/" in path:
        coin_id = path.rsplit("/", 1)[-1]
        return httpx.Response(200, json={"id": coin_id})
    return httpx.Response(404)


class TestEdgeService:
    """Test cases for EdgeService routes."""

    @pytest.fixture
    def config(self):
        return get_config(
            "edge",
            8000,
            upstream_base_url="https://api.example.test/api/v3",
            rate_limit_max_retries=1,
            rate_limit_base_backoff_seconds=0.01,
            redis_url=None,
        )

    @pytest.fixture
    def edge_service(self, config):
        """Create EdgeService instance with a stubbed upstream."""
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream_handler))
        return EdgeService(config, http_client=http_client)

    @pytest.fixture
    def client(self, edge_service):
        """Create test client."""
        return TestClient(edge_service.app)

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "edge"

    def test_coins_miss_then_hit(self, client):
        first = client.get("/api/coins", params={"page": 1, "per_page": 2})
        second = client.get("/api/coins", params={"page": 1, "per_page": 2})

        assert first.status_code == 200
        assert first.json() == COINS
        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert first.headers["Cache-Control"] == "public, s-maxage=120, stale-while-revalidate=240"

    def test_coin_detail(self, client):
        response = client.get("/api/coins/bitcoin")

        assert response.status_code == 200
        assert response.json() == {"id": "bitcoin"}
        assert response.headers["Cache-Control"] == "public, s-maxage=300, stale-while-revalidate=600"

    def test_coin_not_found(self, client):
        response = client.get("/api/coins/missing")

        assert response.status_code == 404
        assert response.json() == {"error": "Coin not found"}

    def test_upstream_rate_limit_maps_to_429(self, client):
        response = client.get("/api/coins/bitcoin/history", params={"days": 7})

        assert response.status_code == 429
        assert response.json() == {"error": "API rate limit exceeded. Please try again later."}

    def test_upstream_failure_maps_to_500(self, client):
        response = client.get("/api/coins", params={"page": 99})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch coins"}

    def test_search(self, client):
        response = client.get("/api/search", params={"query": "solana"})

        assert response.status_code == 200
        assert response.json() == {"coins": [{"id": "solana"}]}
        assert response.headers["X-Cache"] == "MISS"

    def test_search_requires_query(self, client):
        response = client.get("/api/search")
        assert response.status_code == 422

    def test_stale_served_when_upstream_fails(self, edge_service, client):
        edge_service.cache.set("coin-detail:id:bitcoin", {"id": "bitcoin", "cached": True}, ttl_seconds=0)
        edge_service.market_data_service.client.get_coin_detail = AsyncMock(
            side_effect=httpx.ConnectError("connection refused")
        )

        response = client.get("/api/coins/bitcoin")

        assert response.status_code == 200
        assert response.headers["X-Cache"] == "STALE"
        assert response.json() == {"id": "bitcoin", "cached": True}

    def test_cache_stats(self, client):
        client.get("/api/coins/bitcoin")
        client.get("/api/coins/bitcoin")

        response = client.get("/api/cache/stats")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        data = response.json()
        assert data["cache"]["hits"] == 1
        assert data["cache"]["misses"] == 1
        assert data["cache"]["hit_rate_percentage"] == "50.00%"
        assert data["kv"] == {"available": False}
        assert data["rate_limiter"]["status"] == "READY"
        assert data["rate_limiter"]["max_requests_per_window"] == 30
        assert re.fullmatch(r"\d+m \d+s", data["container_age"])
        assert "timestamp" in data

    def test_cache_items(self, client):
        client.get("/api/search", params={"query": "eth"})
        client.get("/api/coins/bitcoin")

        response = client.get("/api/cache/items")

        assert response.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        items = response.json()
        assert [item["key"] for item in items] == ["coin-detail:id:bitcoin", "search:query:eth"]
        assert items[0]["remaining_ttl"].endswith("s")

    def test_kv_keys_without_mirror(self, client):
        response = client.get("/api/cache/kv-keys")

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert response.json() == {"available": False, "keys": [], "error": "KV not configured"}

    def test_kv_keys_with_mirror(self, config):
        mirror = MagicMock()
        mirror.list_keys = AsyncMock(return_value={"available": True, "total_keys": 0, "keys": []})
        mirror.get_stats = AsyncMock(return_value={"available": True, "total_keys": 0})
        service = EdgeService(config, kv_mirror=mirror)
        client = TestClient(service.app)

        response = client.get("/api/cache/kv-keys")

        assert response.json() == {"available": True, "total_keys": 0, "keys": []}
        assert client.get("/api/cache/stats").json()["kv"] == {"available": True, "total_keys": 0}

    def test_warm_cache(self, edge_service, client):
        response = client.post("/api/cache/warm")

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["planned"] == 1
        assert summary["warmed"] == 1
        assert edge_service.cache.has("coins:page:1-per_page:20") is True

    def test_clear_cache(self, edge_service, client):
        client.get("/api/coins/bitcoin")

        response = client.delete("/api/cache")

        assert response.status_code == 200
        assert edge_service.cache.get_stats()["item_count"] == 0
        assert edge_service.cache.get_stats()["hits"] == 0

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "edge"
        assert data["status"] == "ok"
        assert data["dependencies"]["kv"] == "disabled"

    def test_metrics_endpoint(self, client):
        client.get("/api/coins/bitcoin")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "cache_misses_total" in response.text
        assert "upstream_calls_total" in response.text

    def test_request_id_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_service_exposed_on_app_state(self, edge_service):
        assert edge_service.app.state.edge_service is edge_service


class TestContainerAge:
    """Test cases for container age formatting."""

    def test_format(self):
        assert format_container_age(0) == "0m 0s"
        assert format_container_age(125.7) == "2m 5s"

    def test_negative_clamped(self):
        assert format_container_age(-3) == "0m 0s"
