"""
Rate limited gateway for outbound upstream calls.

Calls are admitted against a fixed window quota (and an optional cap on
concurrently executing calls). Calls that do not fit wait in a priority
queue; transient failures are retried with exponential backoff, and every
retry competes for a window slot again.

Queue order: higher effective priority first, then enqueue order. The
effective priority of a waiting call grows by one for every full window it
has spent in the queue, so a call can be overtaken by later arrivals of
priority ``p`` for at most ``p - own_priority`` window cycles.

Window bookkeeping and admission never await, so they are atomic under the
event loop. The gateway is not thread-safe.
"""

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import httpx

from shared.errors import CancellationError, CapacityError, RateLimitError, RetriesExhaustedError, UpstreamError
from shared.logging import get_logger
from shared.retry import RetryConfig, calculate_delay, is_retryable_exception

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class GatewayConfig:
    """Quota, retry and queue limits for a ``FetchGateway``."""

    max_requests_per_window: int = 30
    window_seconds: float = 60.0
    max_retries: int = 3
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    max_queue_size: Optional[int] = None
    max_concurrent: Optional[int] = 10
    jitter: bool = False

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.base_backoff_seconds,
            max_delay=self.max_backoff_seconds,
            jitter=self.jitter,
        )


@dataclass(eq=False)
class QueuedCall:
    """A call waiting for a rate limit slot."""

    priority: int
    enqueued_at: float
    sequence: int
    grant: asyncio.Future = field(repr=False)


class FetchGateway:
    """Wraps async callables with quota enforcement, queueing and retries."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.config = config or GatewayConfig()
        self.metrics = metrics
        self.logger = get_logger("edge.rate_limiter")
        self._retry_config = self.config.retry_config()

        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

        self._window_start = time.monotonic()
        self._window_started_at = time.time()
        self._count = 0
        self._active = 0
        self._queue: List[QueuedCall] = []
        self._sequence = itertools.count()
        self._timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        priority: int = 0,
        signal: Optional[asyncio.Event] = None,
        skip_retry: bool = False,
    ) -> Any:
        """Run ``fn`` once a slot is free, retrying transient failures."""
        attempt = 0
        while True:
            await self._acquire(priority, signal)

            started = time.perf_counter()
            try:
                result = fn()
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                self._record_call("error", started)
                error = exc
            else:
                self._record_call("success", started)
                return result
            finally:
                self._release()

            if skip_retry or not is_retryable_exception(error):
                raise error

            if attempt >= self.config.max_retries:
                self.logger.error(
                    "All retry attempts exhausted",
                    attempts=attempt + 1,
                    error=str(error)
                )
                raise RetriesExhaustedError(
                    f"Upstream call failed after {attempt + 1} attempts: {error}",
                    last_exception=error,
                    attempts=attempt + 1
                ) from error

            delay = self._retry_delay(attempt, error)
            attempt += 1
            self.logger.warning(
                "Upstream call failed, retrying",
                attempt=attempt,
                max_retries=self.config.max_retries,
                delay=round(delay, 3),
                error=str(error)
            )
            if self.metrics:
                self.metrics.increment_counter("upstream_retries_total")
            await self._backoff(delay, signal)

    async def rate_limited_fetch(
        self,
        url: str,
        method: str = "GET",
        *,
        priority: int = 0,
        signal: Optional[asyncio.Event] = None,
        skip_retry: bool = False,
        **request_kwargs: Any,
    ) -> httpx.Response:
        """Perform an HTTP request through ``execute``.

        Non-2xx responses raise ``UpstreamError`` carrying the status code
        (``RateLimitError`` for 429).
        """

        async def _request() -> httpx.Response:
            response = await self._get_client().request(method, url, **request_kwargs)
            if response.is_success:
                return response
            raise _error_for_response(response)

        return await self.execute(_request, priority=priority, signal=signal, skip_retry=skip_retry)

    def get_queue_size(self) -> int:
        return len(self._queue)

    def get_active_count(self) -> int:
        return self._active

    def is_busy(self) -> bool:
        return bool(self._queue) or self._active > 0

    def clear_queue(self) -> int:
        """Reject every queued call with ``CancellationError``."""
        pending, self._queue = self._queue, []
        for call in pending:
            if not call.grant.done():
                call.grant.set_exception(CancellationError("Request queue cleared"))
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._update_queue_gauge()
        if pending:
            self.logger.info("Cleared rate limiter queue", cancelled=len(pending))
        return len(pending)

    def get_stats(self) -> Dict[str, Any]:
        """Current window usage and queue state."""
        self._roll_window()
        busy = self.is_busy()
        return {
            "requests_in_window": self._count,
            "window_start": datetime.fromtimestamp(self._window_started_at, tz=timezone.utc).isoformat(),
            "queue_size": len(self._queue),
            "active_requests": self._active,
            "max_requests_per_window": self.config.max_requests_per_window,
            "max_concurrent": self.config.max_concurrent,
            "status": "BUSY" if busy else "READY",
            "is_busy": busy,
        }

    async def close(self) -> None:
        """Drain the queue and close the HTTP client if we created it."""
        self.clear_queue()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _acquire(self, priority: int, signal: Optional[asyncio.Event]) -> None:
        if signal is not None and signal.is_set():
            raise CancellationError("Request cancelled before execution")

        self._roll_window()
        if not self._queue and self._has_capacity():
            self._admit()
            return

        max_queue = self.config.max_queue_size
        if max_queue is not None and len(self._queue) >= max_queue:
            self.logger.warning("Rate limiter queue full", queue_size=len(self._queue))
            raise CapacityError(
                "Request queue is full",
                details={"queue_size": len(self._queue), "max_queue_size": max_queue}
            )

        call = QueuedCall(
            priority=priority,
            enqueued_at=time.monotonic(),
            sequence=next(self._sequence),
            grant=asyncio.get_running_loop().create_future(),
        )
        self._queue.append(call)
        self.logger.debug(
            "Rate limit reached, queueing call",
            priority=priority,
            queue_size=len(self._queue),
            requests_in_window=self._count
        )
        self._drain()

        try:
            await self._wait_for_grant(call, signal)
        except BaseException:
            self._abandon(call)
            raise

    async def _wait_for_grant(self, call: QueuedCall, signal: Optional[asyncio.Event]) -> None:
        if signal is None:
            await call.grant
            return

        signal_waiter = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({call.grant, signal_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            signal_waiter.cancel()

        if call.grant.done():
            # a granted slot wins over a signal that fired at the same time
            call.grant.result()
            return
        raise CancellationError("Request cancelled while queued")

    def _abandon(self, call: QueuedCall) -> None:
        if call in self._queue:
            self._queue.remove(call)
            self._update_queue_gauge()
        elif call.grant.done() and not call.grant.cancelled() and call.grant.exception() is None:
            # slot was granted but the caller went away before using it
            self._release()

    def _has_capacity(self) -> bool:
        if self._count >= self.config.max_requests_per_window:
            return False
        max_concurrent = self.config.max_concurrent
        return max_concurrent is None or self._active < max_concurrent

    def _admit(self) -> None:
        self._count += 1
        self._active += 1

    def _release(self) -> None:
        self._active -= 1
        if self._queue:
            self._drain()

    def _roll_window(self) -> None:
        now = time.monotonic()
        if now - self._window_start >= self.config.window_seconds:
            self._window_start = now
            self._window_started_at = time.time()
            self._count = 0

    def _drain(self) -> None:
        """Hand free slots to queued calls in priority order."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._roll_window()
        while self._queue and self._has_capacity():
            call = self._next_call()
            self._queue.remove(call)
            if call.grant.done():
                continue
            self._admit()
            call.grant.set_result(None)

        self._update_queue_gauge()
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        # Only a saturated window needs a timer; freed concurrency slots drain on release
        if not self._queue or self._timer is not None:
            return
        if self._count < self.config.max_requests_per_window:
            return
        elapsed = time.monotonic() - self._window_start
        delay = max(0.0, self.config.window_seconds - elapsed)
        self._timer = asyncio.get_running_loop().call_later(delay, self._drain)

    def _next_call(self) -> QueuedCall:
        now = time.monotonic()
        window = self.config.window_seconds

        def order(call: QueuedCall):
            aged = int((now - call.enqueued_at) // window) if window > 0 else 0
            return (-(call.priority + aged), call.sequence)

        return min(self._queue, key=order)

    # ------------------------------------------------------------------
    # Retry helpers
    # ------------------------------------------------------------------

    def _retry_delay(self, attempt: int, error: BaseException) -> float:
        delay = calculate_delay(attempt, self._retry_config)
        retry_after = getattr(error, "retry_after", None)
        if retry_after:
            delay = min(max(delay, retry_after), self._retry_config.max_delay)
        return delay

    async def _backoff(self, delay: float, signal: Optional[asyncio.Event]) -> None:
        if signal is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(signal.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise CancellationError("Request cancelled during retry backoff")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _record_call(self, outcome: str, started: float) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("upstream_calls_total", outcome=outcome)
        self.metrics.observe_histogram("upstream_call_duration_seconds", time.perf_counter() - started)

    def _update_queue_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("rate_limiter_queue_size", len(self._queue))


def _error_for_response(response: httpx.Response) -> UpstreamError:
    status = response.status_code
    reason = response.reason_phrase
    if status == 429:
        return RateLimitError(
            f"HTTP 429: {reason or 'Too Many Requests'}",
            retry_after=_parse_retry_after(response.headers.get("retry-after")),
            response=response,
        )
    return UpstreamError(
        f"HTTP {status}: {reason or 'Unknown Error'}",
        status,
        response=response,
    )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta seconds or an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())
