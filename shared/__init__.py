"""
Shared utilities for the inventory cache.

This package aggregates common building blocks consumed by the service:

- config: Cache and service configuration via pydantic-settings
- logging: Structured logging with request and owner correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton with health and metrics routes
- test_helpers: Clocks and factories used by the test suites

Do not import from service_* packages into shared/.
"""
