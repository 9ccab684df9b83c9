"""Shared fixtures."""

import pytest
from prometheus_client import CollectorRegistry

from codesearch.common.config import SearchConfig
from codesearch.common.metrics import MetricsCollector
from codesearch.hybrid.search_pipeline import SearchPipeline

from tests.fakes import FakeEmbedder, FakeReranker, FakeSource, make_candidate


@pytest.fixture
def config():
    return SearchConfig(
        file_events_enabled=False,
        enable_hybrid_search=True,
        enable_llm_reranking=True,
        hybrid_adaptive_alpha=False,
    )


@pytest.fixture
def metrics():
    return MetricsCollector("test-service", registry=CollectorRegistry())


@pytest.fixture
def dense_results():
    return [
        make_candidate("d1", file_path="src/search.ts", start_line=1, end_line=20, score=0.9),
        make_candidate("d2", file_path="src/cache.ts", start_line=5, end_line=30, score=0.8),
        make_candidate("d3", file_path="src/fusion.ts", start_line=40, end_line=60, score=0.75),
    ]


@pytest.fixture
def sparse_results():
    return [
        make_candidate("d2", file_path="src/cache.ts", start_line=5, end_line=30, score=0.6),
        make_candidate("s1", file_path="src/util.ts", start_line=1, end_line=5, score=0.5),
    ]


@pytest.fixture
def make_pipeline(config, metrics, dense_results, sparse_results):
    """Factory building a pipeline over fakes; keyword overrides replace fakes."""

    def _make(**overrides):
        embedder = overrides.pop("embedder", None) or FakeEmbedder()
        source = overrides.pop("source", None) or FakeSource(dense=dense_results, sparse=sparse_results)
        reranker = overrides.pop("reranker", None) or FakeReranker()
        pipeline_config = overrides.pop("config", None) or config
        return SearchPipeline(
            config=pipeline_config,
            embedder=embedder,
            source=source,
            reranker=reranker,
            metrics=metrics,
            **overrides
        )

    return _make
