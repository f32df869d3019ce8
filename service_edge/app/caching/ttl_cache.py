"""
In-memory TTL cache with single-flight request deduplication.

Entries expire lazily: nothing is removed until a lookup (or the optional
sweeper) notices the deadline has passed. Expired values are kept in a
bounded stale area so callers can still fall back to them when the
upstream API is failing.

The cache is not thread-safe. All methods must be called from the event
loop that owns the instance; ``dedupe_request`` relies on the fact that
nothing can interleave between its cache check and the registration of
the in-flight task.
"""

import asyncio
import inspect
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union, TYPE_CHECKING

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


T = TypeVar("T")

Fetcher = Callable[[], Union[Awaitable[T], T]]

DEFAULT_TTL = 5 * 60
DEFAULT_MAX_ENTRIES = 500
DEFAULT_MAX_SIZE_BYTES = 100 * 1024 * 1024
DEFAULT_STALE_RETENTION = 60 * 60
UNSERIALIZABLE_SIZE = 1000

_MISSING = object()

# Per resource TTLs (seconds)
CACHE_TTL = {
    "coins": 2 * 60,
    "coin-detail": 5 * 60,
    "price-history": 15 * 60,
    "search": 10 * 60,
}


@dataclass
class CacheEntry:
    """A stored value and its expiry metadata."""

    key: str
    value: Any
    expires_at: float
    inserted_at: float
    size: int


@dataclass
class WarmEntry:
    """Key to pre-populate and how to fetch it."""

    key: str
    fetcher: Callable[[], Any]
    ttl_seconds: Optional[float] = None


def make_cache_key(resource_type: str, params: Dict[str, Any]) -> str:
    """Build ``type:k1:v1-k2:v2`` with parameters sorted by name."""
    sorted_params = "-".join(f"{name}:{params[name]}" for name in sorted(params))
    return f"{resource_type}:{sorted_params}"


def estimate_size(value: Any) -> int:
    """Approximate cost of a value as its JSON length."""
    try:
        return len(json.dumps(value))
    except (TypeError, ValueError):
        return UNSERIALIZABLE_SIZE


def _cache_type(key: str) -> str:
    return key.split(":", 1)[0] or "unknown"


class TTLCache:
    """Key/value store with expiry, stale reads and single-flight fetches."""

    def __init__(
        self,
        *,
        default_ttl_seconds: float = DEFAULT_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        stale_retention_seconds: float = DEFAULT_STALE_RETENTION,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self.max_entries = max(1, max_entries)
        self.max_size_bytes = max_size_bytes
        self.stale_retention_seconds = stale_retention_seconds
        self.metrics = metrics
        self.logger = get_logger("edge.cache")
        self._clock = clock

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._stale: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._hits = 0
        self._misses = 0
        self._size = 0
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        """Return a live value, or None. Expired entries are evicted."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def _lookup(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is not None and self._clock() < entry.expires_at:
            self._entries.move_to_end(key)
            self._record_access(key, hit=True)
            return entry.value

        if entry is not None:
            self._retire(key)
        self._record_access(key, hit=False)
        return _MISSING

    def get_stale(self, key: str) -> Optional[Any]:
        """Return the last stored value for ``key`` even if it expired."""
        entry = self._entries.get(key) or self._stale.get(key)
        return entry.value if entry is not None else None

    def has(self, key: str) -> bool:
        """True if a live entry exists. Does not count as a hit or miss."""
        entry = self._entries.get(key)
        return entry is not None and self._clock() < entry.expires_at

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store ``value`` under ``key``, replacing any previous entry."""
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock()

        self._drop(key)
        self._stale.pop(key, None)

        entry = CacheEntry(
            key=key,
            value=value,
            expires_at=now + ttl,
            inserted_at=now,
            size=estimate_size(value),
        )
        self._entries[key] = entry
        self._size += entry.size
        self._enforce_capacity()

    def delete(self, key: str) -> bool:
        """Remove ``key`` entirely, stale copy included."""
        removed = self._drop(key) is not None
        if self._stale.pop(key, None) is not None:
            removed = True
        return removed

    def clear(self) -> None:
        """Drop every entry and reset statistics."""
        self._entries.clear()
        self._stale.clear()
        self._in_flight.clear()
        self._hits = 0
        self._misses = 0
        self._size = 0

    # ------------------------------------------------------------------
    # Request deduplication
    # ------------------------------------------------------------------

    async def dedupe_request(self, key: str, fetcher: Fetcher, ttl_seconds: Optional[float] = None) -> T:
        """Return the cached value or share one fetch among concurrent callers.

        The fetcher's exception reaches every waiter unchanged. A waiter
        that is cancelled stops waiting but does not cancel the shared
        fetch.
        """
        # a live entry may legitimately hold None
        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_fetch(key, fetcher, ttl_seconds))
            task.add_done_callback(_consume_exception)
            self._in_flight[key] = task
            self.logger.debug("Cache miss, fetching", key=key)
        else:
            self.logger.debug("Joining in-flight request", key=key)

        return await asyncio.shield(task)

    async def _run_fetch(self, key: str, fetcher: Fetcher, ttl_seconds: Optional[float]) -> Any:
        try:
            result = fetcher()
            if inspect.isawaitable(result):
                result = await result
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

        self.set(key, result, ttl_seconds)
        return result

    def pending_count(self) -> int:
        """Number of fetches currently in flight."""
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters and storage totals."""
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": self._size,
            "item_count": len(self._entries),
            "hit_rate": hit_rate,
            "hit_rate_percentage": f"{hit_rate * 100:.2f}%",
        }

    def get_cache_items(self) -> List[Dict[str, Any]]:
        """Every stored entry sorted by key. Does not evict."""
        now = self._clock()
        items = []
        for key, entry in self._entries.items():
            remaining = entry.expires_at - now
            items.append({
                "key": key,
                "size": entry.size,
                "remaining_ttl": f"{int(remaining + 0.5)}s" if remaining > 0 else "Expired",
            })
        return sorted(items, key=lambda item: item["key"])

    # ------------------------------------------------------------------
    # Warming and sweeping
    # ------------------------------------------------------------------

    async def warm_cache(self, entries: List[WarmEntry]) -> Dict[str, Any]:
        """Populate missing keys in parallel; failures are isolated."""
        summary: Dict[str, Any] = {
            "planned": len(entries),
            "warmed": 0,
            "skipped": 0,
            "errors": [],
        }

        async def _warm(entry: WarmEntry) -> str:
            if self.has(entry.key):
                return "skipped"
            result = entry.fetcher()
            if inspect.isawaitable(result):
                result = await result
            self.set(entry.key, result, entry.ttl_seconds)
            return "warmed"

        outcomes = await asyncio.gather(*(_warm(entry) for entry in entries), return_exceptions=True)
        for entry, outcome in zip(entries, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.warning("Cache warm entry failed", key=entry.key, error=str(outcome))
                summary["errors"].append({"key": entry.key, "error": str(outcome)})
                self._record_warm("error")
                continue
            summary[outcome] += 1
            self._record_warm(outcome)

        self.logger.info(
            "Cache warm completed",
            planned=summary["planned"],
            warmed=summary["warmed"],
            skipped=summary["skipped"],
            errors=len(summary["errors"]),
        )
        return summary

    def purge_expired(self) -> int:
        """Move expired entries to the stale area and drop old stale ones."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
        for key in expired:
            self._retire(key)

        cutoff = now - self.stale_retention_seconds
        dropped = [key for key, entry in self._stale.items() if entry.expires_at <= cutoff]
        for key in dropped:
            del self._stale[key]

        if expired or dropped:
            self.logger.debug("Purged cache entries", expired=len(expired), dropped=len(dropped))
        return len(expired) + len(dropped)

    def start_sweeper(self, interval_seconds: float) -> None:
        """Run ``purge_expired`` every ``interval_seconds`` in the background."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.ensure_future(self._sweep(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.purge_expired()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drop(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size -= entry.size
        return entry

    def _retire(self, key: str) -> None:
        """Move a live entry to the bounded stale area."""
        entry = self._drop(key)
        if entry is None:
            return
        self._stale[key] = entry
        self._stale.move_to_end(key)
        while len(self._stale) > self.max_entries:
            self._stale.popitem(last=False)

    def _enforce_capacity(self) -> None:
        # Least recently used entries sit at the front
        while self._entries and (
            len(self._entries) > self.max_entries or self._size > self.max_size_bytes
        ):
            if len(self._entries) == 1:
                # a single oversized value is kept rather than refusing the write
                break
            oldest = next(iter(self._entries))
            self.logger.debug("Evicting cache entry", key=oldest)
            self._retire(oldest)

    def _record_access(self, key: str, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1

        if not self.metrics:
            return
        metric = "cache_hits_total" if hit else "cache_misses_total"
        self.metrics.increment_counter(metric, cache_type=_cache_type(key))

    def _record_warm(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("cache_warm_total", result=result)


def _consume_exception(task: asyncio.Task) -> None:
    """Mark a shared fetch's exception as retrieved when every waiter left."""
    if not task.cancelled():
        task.exception()
