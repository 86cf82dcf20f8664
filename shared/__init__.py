"""
Shared utilities for the tiered cache layer.

This package aggregates the ambient building blocks used by every cache
component:

- config: Layer configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types

Do not import from service_cache into shared/.
"""
