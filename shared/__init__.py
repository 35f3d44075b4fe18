"""
Shared utilities for the meter API cache gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for upstream calls
- base_service: FastAPI service skeleton with health and metrics routes

Do not import from service packages into shared/.
"""
