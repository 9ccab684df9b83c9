"""Tests for common utilities."""

import asyncio

import pytest
from prometheus_client import CollectorRegistry

from codesearch.common.config import BaseConfig, SearchConfig, get_config
from codesearch.common.errors import (
    CircuitBreakerError,
    CollaboratorError,
    QueryValidationError,
    SearchError,
    SearchStageError,
)
from codesearch.common.logging import configure_logging, log_performance
from codesearch.common.metrics import MetricsCollector
from codesearch.common.tracing import SearchTracer, get_search_tracer


def test_config_loading():
    """Test configuration loading."""
    config = BaseConfig()
    assert config.cs_env == "local"
    assert config.cs_log_level == "INFO"
    assert config.cs_tracing_enabled is False


def test_search_config_defaults():
    config = SearchConfig()
    assert config.search_port == 9007
    assert config.hybrid_search_alpha == 0.7
    assert config.search_cache_ttl == 300
    assert config.search_cache_max_size == 1000
    assert config.search_cache_max_results == 100
    assert config.embedding_model == "voyage-code-3"
    assert config.default_token_budget == 30000


def test_search_config_from_environment(monkeypatch):
    monkeypatch.setenv("HYBRID_SEARCH_ALPHA", "0.4")
    monkeypatch.setenv("ENABLE_LLM_RERANKING", "false")
    config = SearchConfig()
    assert config.hybrid_search_alpha == 0.4
    assert config.enable_llm_reranking is False


def test_get_config():
    assert isinstance(get_config("search"), SearchConfig)
    unknown = get_config("unknown")
    assert type(unknown) is BaseConfig


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")
    configure_logging("test-service", "debug", "console", env="test")
    log_performance("search", 12.345, results=3)


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service", registry=CollectorRegistry())
    assert collector.service_name == "test-service"

    collector.record_http_request("GET", "/test", 200, 0.1)
    collector.record_search("hybrid", 0.05)
    collector.record_stage("embedding", 0.01)
    collector.record_stage_failure("dense_search")
    collector.record_cache_hit("search_results")
    collector.record_cache_miss("search_results")
    collector.record_rerank("applied")

    metrics = collector.get_metrics()
    assert isinstance(metrics, str)
    assert "http_requests_total" in metrics
    assert 'code_search_requests_total{query_type="hybrid"} 1.0' in metrics
    assert 'code_search_stage_failures_total{stage="dense_search"} 1.0' in metrics
    assert 'code_search_rerank_outcomes_total{outcome="applied"} 1.0' in metrics


def test_stage_error_message_names_stage():
    cause = RuntimeError("connection refused")
    error = SearchStageError("embedding", cause)
    assert error.stage == "embedding"
    assert error.cause is cause
    assert "embedding" in str(error)
    assert "connection refused" in str(error)
    assert isinstance(error, SearchError)


def test_stage_error_uses_type_name_for_silent_causes():
    error = SearchStageError("dense_search", asyncio.TimeoutError())
    assert "TimeoutError" in str(error)


def test_error_hierarchy():
    assert issubclass(QueryValidationError, ValueError)
    assert issubclass(CircuitBreakerError, CollaboratorError)


def test_search_tracer_spans_without_provider():
    tracer = get_search_tracer("test-service")
    assert isinstance(tracer, SearchTracer)

    with tracer.trace_search_query("code", 10, language="python"):
        with tracer.trace_stage("fusion"):
            pass

    with pytest.raises(ValueError):
        with tracer.trace_stage("embedding"):
            raise ValueError("boom")
