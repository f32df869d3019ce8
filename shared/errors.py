"""
Shared error handling for the Coin Edge service.

Cache misses are never errors; lookups return ``None``. Everything raised
across the cache/gateway boundary derives from ``EdgeException`` so route
handlers can map it to an HTTP status.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class EdgeException(Exception):
    """Base exception for Coin Edge components."""

    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class UpstreamError(EdgeException):
    """Failure reported by the upstream market data API.

    ``status_code`` is the HTTP status of the upstream response when the
    error came from one, otherwise ``None`` (transport failures).
    """

    def __init__(
        self,
        message: str = "Upstream request failed",
        status_code: Optional[int] = None,
        *,
        retry_after: Optional[float] = None,
        response: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if status_code is not None:
            details.setdefault("status_code", status_code)
        super().__init__("UPSTREAM_ERROR", message, details)
        self.status_code = status_code
        self.retry_after = retry_after
        self.response = response


class RateLimitError(UpstreamError):
    """Upstream answered 429 Too Many Requests."""

    def __init__(
        self,
        message: str = "HTTP 429: Too Many Requests",
        *,
        retry_after: Optional[float] = None,
        response: Any = None,
    ):
        super().__init__(message, 429, retry_after=retry_after, response=response)
        self.code = "RATE_LIMIT_ERROR"


class RetriesExhaustedError(UpstreamError):
    """All retry attempts failed; wraps the last observed error."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(
            message,
            getattr(last_exception, "status_code", None),
            retry_after=getattr(last_exception, "retry_after", None),
            response=getattr(last_exception, "response", None),
            details={"attempts": attempts, "last_error": str(last_exception)},
        )
        self.code = "RETRIES_EXHAUSTED"
        self.last_exception = last_exception
        self.attempts = attempts


class CapacityError(EdgeException):
    """Gateway queue is full."""

    def __init__(self, message: str = "Request queue is full", details: Optional[Dict[str, Any]] = None):
        super().__init__("CAPACITY_ERROR", message, details, status_code=503)


class CancellationError(EdgeException):
    """Gateway call was cancelled before it executed."""

    def __init__(self, message: str = "Request cancelled", details: Optional[Dict[str, Any]] = None):
        super().__init__("CANCELLED", message, details, status_code=499)
