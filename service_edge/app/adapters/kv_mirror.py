"""
Redis mirror of cached upstream payloads.

Lets a freshly started instance serve data fetched by an earlier one
without spending upstream quota. Every operation is best effort: Redis
failures are logged and reported as a miss.
"""

import json
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from shared.logging import get_logger


class KVMirror:
    """JSON values in Redis keyed by cache key, expiring with the entry TTL."""

    def __init__(self, redis_url: Optional[str] = None, *, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("edge.kv_mirror")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        """Return the mirrored value or None."""
        try:
            redis_client = await self._get_redis()
            raw = await redis_client.get(key)
            if raw is None:
                return None
            self.logger.debug("KV mirror hit", key=key)
            return json.loads(raw)
        except Exception as e:
            self.logger.warning("KV mirror read failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> bool:
        """Store ``value`` with an expiry of ``ttl_seconds`` (at least one second)."""
        try:
            redis_client = await self._get_redis()
            await redis_client.setex(key, max(1, int(ttl_seconds)), json.dumps(value))
            return True
        except Exception as e:
            self.logger.warning("KV mirror write failed", key=key, error=str(e))
            return False

    async def get_stats(self) -> Dict[str, Any]:
        try:
            redis_client = await self._get_redis()
            keys = await redis_client.keys("*")
            return {"available": True, "total_keys": len(keys)}
        except Exception as e:
            self.logger.warning("KV mirror stats failed", error=str(e))
            return {"available": False, "error": str(e)}

    async def list_keys(self, limit: int = 50) -> Dict[str, Any]:
        """Describe up to ``limit`` mirrored keys with their TTL and size."""
        try:
            redis_client = await self._get_redis()
            keys = sorted(await redis_client.keys("*"))
        except Exception as e:
            self.logger.warning("KV mirror key listing failed", error=str(e))
            return {"available": False, "keys": [], "error": str(e)}

        details: List[Dict[str, Any]] = []
        for key in keys[:limit]:
            try:
                ttl = await redis_client.ttl(key)
                raw = await redis_client.get(key)
                details.append({
                    "key": key,
                    "ttl": ttl if ttl > 0 else "No expiry",
                    "size": len(raw) if raw is not None else 0,
                    "type": key.split(":", 1)[0] or "unknown",
                })
            except Exception as e:
                self.logger.warning("KV mirror key inspection failed", key=key, error=str(e))
                details.append({"key": key, "ttl": "Unknown", "size": 0, "type": "error"})

        return {"available": True, "total_keys": len(keys), "keys": details}

    async def close(self) -> None:
        """Close Redis connections."""
        if self._redis is None:
            return
        try:
            await self._redis.aclose()
        except Exception as e:  # pragma: no cover - close is best effort
            self.logger.debug("KV mirror close failed", error=str(e))
        self._redis = None
