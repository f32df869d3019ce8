"""
Retry policy for outbound upstream calls.
"""

import asyncio
import random
from typing import Optional

import httpx

from shared.errors import EdgeException, UpstreamError


# HTTP statuses worth another attempt: rate limited or server side failure
RETRYABLE_STATUS_MIN = 500


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_retries: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 exponential_base: float = 2.0,
                 jitter: bool = False,
                 backoff_strategy: str = "exponential"):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number ``attempt`` (zero based)."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** attempt)
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * (attempt + 1)
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def is_retryable_status(status_code: Optional[int]) -> bool:
    """429 and 5xx are transient; every other status is terminal."""
    if status_code is None:
        return False
    return status_code == 429 or status_code >= RETRYABLE_STATUS_MIN


def is_retryable_exception(exc: BaseException) -> bool:
    """Classify a failed attempt as transient or terminal."""
    if isinstance(exc, UpstreamError):
        if exc.status_code is None:
            # raised without a response, i.e. the transport failed
            return True
        return is_retryable_status(exc.status_code)

    if isinstance(exc, EdgeException):
        # capacity and cancellation failures are local decisions
        return False

    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, OSError)):
        return True

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return is_retryable_status(status_code)

    return False
