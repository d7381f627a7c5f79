"""
Shared utilities for the backlog privilege services.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton (health, metrics, error handlers)
- test_helpers: Seeded grant store factory for tests

Any cross-service logic should live here to avoid import cycles across
service packages. Runtime modules here do not import from service_* packages;
test_helpers is the one exception.
"""
