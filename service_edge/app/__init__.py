"""
Edge service application package.

The edge answers market data requests from a local TTL cache and only
calls the upstream API through a rate limited gateway, so bursts of
client traffic never exceed the upstream quota.

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.adapters: CoinGecko HTTP client and the optional Redis mirror.
- app.caching: TTL cache with stale reads and single-flight fetches.
- app.ratelimit: Window quota, priority queue and retry gateway.
- app.market_data: Read-through orchestration and cache warming.
"""
