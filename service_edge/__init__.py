"""
Coin Edge service.

Caching edge in front of the CoinGecko market data API.
"""
