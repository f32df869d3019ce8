"""
Rate limiting package for the edge service.

Holds the fetch gateway that enforces the upstream per-window call quota,
queues excess calls by priority and retries transient failures.
"""

from .fetch_gateway import FetchGateway, GatewayConfig

__all__ = ["FetchGateway", "GatewayConfig"]
