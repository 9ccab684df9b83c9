"""API routes for the code search service."""

import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
import structlog

from ..common.errors import ChunkNotFoundError, QueryValidationError, SearchStageError
from ..hybrid.search_pipeline import SearchPipeline
from ..models import SearchQuery

logger = structlog.get_logger("search_api")

router = APIRouter()


class SearchRequest(BaseModel):
    """Request model for the search endpoints."""
    query: str = Field(..., description="Natural-language or identifier query")
    language: Optional[str] = Field(None, description="Restrict to one language")
    chunk_kind: Optional[str] = Field(None, description="Restrict to one chunk kind")
    file_path: Optional[str] = Field(None, description="Restrict to one file")
    limit: int = Field(10, ge=1, le=100, description="Maximum number of results")
    threshold: float = Field(0.7, ge=0.0, le=1.0, description="Minimum dense similarity")
    enable_hybrid: Optional[bool] = Field(None, description="Override hybrid search")
    enable_reranking: Optional[bool] = Field(None, description="Override reranking")
    rerank_timeout_ms: Optional[int] = Field(None, ge=1, description="Request budget for reranking")
    max_per_file: Optional[int] = Field(3, ge=1, description="Results kept per file")
    prefer_functions: bool = Field(False, description="Boost function chunks")
    prefer_classes: bool = Field(False, description="Boost class chunks")
    prefer_implementation: bool = Field(True, description="Favour implementation over docs")

    def to_query(self) -> SearchQuery:
        return SearchQuery(
            text=self.query,
            language=self.language,
            chunk_kind=self.chunk_kind,
            file_path=self.file_path,
            limit=self.limit,
            threshold=self.threshold,
            enable_hybrid=self.enable_hybrid,
            enable_reranking=self.enable_reranking,
            rerank_timeout_ms=self.rerank_timeout_ms,
            max_per_file=self.max_per_file,
            prefer_functions=self.prefer_functions,
            prefer_classes=self.prefer_classes,
            prefer_implementation=self.prefer_implementation,
        )


class ReferencesRequest(SearchRequest):
    """Request model for the code references endpoint."""
    token_budget: Optional[int] = Field(None, ge=1, description="Token budget for assembled context")


class SearchResponse(BaseModel):
    """Response model for the search endpoint."""
    results: List[Dict[str, Any]] = Field(..., description="Ranked candidates")
    total: int = Field(..., description="Number of results")
    query: str = Field(..., description="Original query")
    cache_hit: bool = Field(..., description="Served from the cache")
    hybrid_used: bool = Field(..., description="Dense and keyword results were blended")
    reranked: bool = Field(..., description="Reranker changed the order")
    latency_ms: float = Field(..., description="Search latency in milliseconds")


class ReferencesResponse(BaseModel):
    """Response model for the code references endpoint."""
    references: List[Dict[str, Any]] = Field(..., description="Merged code references")
    truncated: bool = Field(..., description="Some results did not fit the budget")
    summary: Optional[str] = Field(None, description="What was left out")
    context_window: Dict[str, int] = Field(..., description="Budget and usage in tokens")
    metadata: Dict[str, Any] = Field(..., description="Pipeline metadata")


class InvalidateRequest(BaseModel):
    """Request model for cache invalidation."""
    path: Optional[str] = Field(None, description="Invalidate entries referencing this file")
    language: Optional[str] = Field(None, description="Invalidate entries referencing this language")


def get_search_pipeline(request: Request) -> SearchPipeline:
    """Get search pipeline from application state."""
    return request.app.state.search_pipeline


def _to_http_error(error: Exception, query: str) -> HTTPException:
    if isinstance(error, QueryValidationError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, ChunkNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, SearchStageError):
        logger.error("Search stage failed", query=query[:50], stage=error.stage, error=str(error))
        return HTTPException(status_code=502, detail=str(error))
    logger.error("Search failed", query=query[:50], error=str(error))
    return HTTPException(status_code=500, detail=f"Search failed: {error}")


@router.post("/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    pipeline: SearchPipeline = Depends(get_search_pipeline)
):
    """Run the full search pipeline."""
    start_time = time.time()

    try:
        outcome = await pipeline.execute(request.to_query())
    except Exception as e:
        raise _to_http_error(e, request.query) from e

    latency_ms = (time.time() - start_time) * 1000
    return SearchResponse(
        results=[candidate.to_dict() for candidate in outcome.results],
        total=len(outcome.results),
        query=request.query,
        cache_hit=outcome.cache_hit,
        hybrid_used=outcome.hybrid_used,
        reranked=outcome.reranked,
        latency_ms=latency_ms
    )


@router.post("/search/references", response_model=ReferencesResponse)
async def search_references(
    request: ReferencesRequest,
    pipeline: SearchPipeline = Depends(get_search_pipeline)
):
    """Search and return token-budgeted code references."""
    try:
        result = await pipeline.search_for_code_references(request.to_query(), request.token_budget)
    except Exception as e:
        raise _to_http_error(e, request.query) from e

    return ReferencesResponse(**result)


@router.get("/chunks/{chunk_id}/similar")
async def find_similar(
    chunk_id: str,
    limit: int = Query(5, ge=1, le=50),
    pipeline: SearchPipeline = Depends(get_search_pipeline)
):
    """Chunks whose content resembles the given chunk."""
    try:
        results = await pipeline.find_similar(chunk_id, limit)
    except Exception as e:
        raise _to_http_error(e, chunk_id) from e

    return {
        "chunk_id": chunk_id,
        "results": [candidate.to_dict() for candidate in results],
        "total": len(results),
    }


@router.get("/chunks/{chunk_id}/context")
async def get_code_context(
    chunk_id: str,
    context_lines: int = Query(5, ge=0, le=100),
    pipeline: SearchPipeline = Depends(get_search_pipeline)
):
    """The chunk and the neighbouring chunks of its file."""
    try:
        result = await pipeline.get_code_context(chunk_id, context_lines)
    except Exception as e:
        raise _to_http_error(e, chunk_id) from e

    if result is None:
        raise HTTPException(status_code=404, detail=f"Chunk not found: {chunk_id}")
    return {"chunk": result["chunk"].to_dict(), "context": result["context"]}


@router.post("/cache/invalidate")
async def invalidate_cache(
    request: InvalidateRequest,
    pipeline: SearchPipeline = Depends(get_search_pipeline)
):
    """Drop cached results referencing a file and/or a language."""
    if not request.path and not request.language:
        raise HTTPException(status_code=400, detail="Either path or language is required")

    removed = 0
    if request.path:
        removed += pipeline.invalidate_file(request.path)
    if request.language:
        removed += pipeline.invalidate_language(request.language)

    logger.info("Cache invalidated", path=request.path, language=request.language, removed=removed)
    return {"status": "ok", "removed": removed}


@router.delete("/cache")
async def clear_cache(pipeline: SearchPipeline = Depends(get_search_pipeline)):
    """Drop every cached result."""
    removed = pipeline.clear_caches()
    return {"status": "ok", "removed": removed}


@router.get("/stats")
async def get_stats(pipeline: SearchPipeline = Depends(get_search_pipeline)):
    """Search and cache statistics."""
    return pipeline.get_stats()
