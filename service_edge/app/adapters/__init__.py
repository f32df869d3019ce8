"""
Adapters package for the edge service.

Contains wrappers for external dependencies:

- CoinGecko REST API, called through the fetch gateway
- Redis, used as an optional durable mirror of cached payloads

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .coingecko_client import CoinGeckoClient
from .kv_mirror import KVMirror

__all__ = ["CoinGeckoClient", "KVMirror"]
