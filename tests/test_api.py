"""Tests for the HTTP surface."""

import httpx
import pytest
import pytest_asyncio

from codesearch.common.errors import EmbeddingServiceError
from codesearch.main import create_app

from tests.fakes import FakeEmbedder


@pytest.fixture
def pipeline(make_pipeline):
    return make_pipeline()


@pytest.fixture
def app(config, pipeline, metrics):
    return create_app(config=config, pipeline=pipeline, metrics_collector=metrics)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_search_endpoint(client):
    response = await client.post("/api/v1/search", json={"query": "parse config", "limit": 3})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert body["query"] == "parse config"
    assert body["hybrid_used"] is True
    assert body["reranked"] is True
    assert body["cache_hit"] is False
    assert {"chunk_id", "file_path", "score", "hybrid_score"} <= set(body["results"][0])
    assert "X-Process-Time" in response.headers


@pytest.mark.asyncio
async def test_search_request_overrides_reach_pipeline(client, pipeline):
    response = await client.post("/api/v1/search", json={
        "query": "parse config",
        "language": "typescript",
        "enable_hybrid": False,
        "enable_reranking": False,
    })

    assert response.status_code == 200
    assert response.json()["hybrid_used"] is False
    assert pipeline.source.keyword_calls == []
    assert pipeline.source.dense_calls[0].language == "typescript"
    assert pipeline.reranker.calls == []


@pytest.mark.asyncio
async def test_blank_query_is_bad_request(client):
    response = await client.post("/api/v1/search", json={"query": "   "})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_out_of_range_limit_is_rejected(client):
    response = await client.post("/api/v1/search", json={"query": "parse config", "limit": 0})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_stage_failure_is_bad_gateway(config, metrics, make_pipeline):
    pipeline = make_pipeline(embedder=FakeEmbedder(error=EmbeddingServiceError("down")))
    app = create_app(config=config, pipeline=pipeline, metrics_collector=metrics)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/v1/search", json={"query": "parse config"})

    assert response.status_code == 502
    assert "embedding" in response.json()["detail"]


@pytest.mark.asyncio
async def test_references_endpoint(client):
    response = await client.post("/api/v1/search/references", json={"query": "parse config", "token_budget": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["truncated"] is True
    assert body["summary"]
    assert body["context_window"] == {"token_budget": 1, "tokens_used": 0}
    assert body["metadata"]["total_results"] == 4


@pytest.mark.asyncio
async def test_similar_chunks_endpoint(client):
    response = await client.get("/api/v1/chunks/d1/similar", params={"limit": 2})

    assert response.status_code == 200
    body = response.json()
    assert body["chunk_id"] == "d1"
    assert body["total"] == 2
    assert "d1" not in [result["chunk_id"] for result in body["results"]]
    assert body["results"][0]["context"].startswith("File: ")

    missing = await client.get("/api/v1/chunks/nope/similar")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_code_context_endpoint(client):
    response = await client.get("/api/v1/chunks/d2/context", params={"context_lines": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["chunk"]["chunk_id"] == "d2"
    assert "// Lines 5-30\n// d2" in body["context"]

    missing = await client.get("/api/v1/chunks/nope/context")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_cache_invalidation_endpoints(client):
    await client.post("/api/v1/search", json={"query": "parse config"})

    missing = await client.post("/api/v1/cache/invalidate", json={})
    assert missing.status_code == 400

    invalidated = await client.post("/api/v1/cache/invalidate", json={"path": "src/search.ts"})
    assert invalidated.json() == {"status": "ok", "removed": 1}

    await client.post("/api/v1/search", json={"query": "parse config"})
    cleared = await client.delete("/api/v1/cache")
    assert cleared.json() == {"status": "ok", "removed": 1}


@pytest.mark.asyncio
async def test_stats_endpoint(client):
    await client.post("/api/v1/search", json={"query": "parse config"})
    response = await client.get("/api/v1/stats")

    assert response.status_code == 200
    stats = response.json()
    assert stats["total_queries"] == 1
    assert stats["cache"]["size"] == 1


@pytest.mark.asyncio
async def test_health(client, pipeline):
    healthy = await client.get("/health")
    assert healthy.status_code == 200
    assert healthy.json() == {"status": "healthy", "service": "code-search"}

    pipeline.source.healthy = False
    unhealthy = await client.get("/health")
    assert unhealthy.status_code == 503


@pytest.mark.asyncio
async def test_metrics_and_root(client):
    await client.get("/")
    metrics = await client.get("/metrics")

    assert metrics.status_code == 200
    assert 'http_requests_total{method="GET",endpoint="/",status="200"} 1.0' in metrics.text

    root = (await client.get("/")).json()
    assert root["service"] == "code-search"
    assert root["endpoints"]["search"] == "/api/v1/search"
