"""
Shared utilities for the Coin Edge service.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Backoff and retry classification policy
- base_service: FastAPI application scaffolding

Do not import from service_* packages into shared/.
"""
