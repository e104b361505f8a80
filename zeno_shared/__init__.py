"""
Shared utilities for the Zeno edge gateway.

This package aggregates the cross-cutting building blocks used by the
gateway service:

- config: Base configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics registry for the gateway
- errors: Canonical error types and responses
- retry: Backoff configuration for retried background work
- base_service: FastAPI application skeleton (middleware, health, metrics)

Do not import from zeno_gateway into this package.
"""
