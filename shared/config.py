"""
Shared configuration management for the Coin Edge service.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="EDGE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Upstream market data API
    upstream_base_url: str = "https://api.coingecko.com/api/v3"
    upstream_api_key: Optional[str] = None
    upstream_timeout_seconds: float = 10.0

    # Outbound rate limiting (CoinGecko free tier allows 10-30 calls/minute)
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: float = 60.0
    rate_limit_max_retries: int = 3
    rate_limit_base_backoff_seconds: float = 1.0
    rate_limit_max_backoff_seconds: float = 30.0
    rate_limit_max_queue_size: Optional[int] = 100
    rate_limit_max_concurrent: Optional[int] = 10

    # In-memory cache
    cache_default_ttl_seconds: float = 300.0
    cache_max_entries: int = 500
    cache_max_size_bytes: int = 100 * 1024 * 1024
    cache_stale_retention_seconds: float = 3600.0
    cache_sweep_interval_seconds: float = 0.0
    cache_warm_pages: int = 1
    cache_warm_per_page: int = 20

    # Durable mirror (disabled when unset)
    redis_url: Optional[str] = None


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
