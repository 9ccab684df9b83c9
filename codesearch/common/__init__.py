"""Common utilities shared across the search service.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``tracing``: OpenTelemetry setup and per-stage spans.
- ``events``: Redis pub/sub file-change events, publisher, and subscriber.
- ``errors``: exception taxonomy raised by the pipeline and its clients.

Import pattern:
- from codesearch.common.config import SearchConfig
- from codesearch.common.logging import configure_logging
"""
