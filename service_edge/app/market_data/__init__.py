"""Market data read-through service for the edge."""

from .service import CachedResult, MarketDataService

__all__ = ["CachedResult", "MarketDataService"]
