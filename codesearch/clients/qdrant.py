"""Qdrant client providing dense and keyword candidate lists."""

import re
import time
from typing import Any, Callable, List, Optional

import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchValue

from ..common.errors import CandidateSourceError
from ..models import Candidate, SearchQuery, ranking_key
from .base import CandidateSource
from .circuit_breaker import CircuitBreaker

logger = structlog.get_logger("qdrant_client")

SCROLL_PAGE_SIZE = 1000


def keyword_score(query_text: str, content: str) -> float:
    """Term-occurrence score squashed into ``[0, 1)``.

    ``hits / (hits + terms)``: one occurrence per term gives 0.5, more
    occurrences approach 1.0.
    """
    terms = [t for t in re.split(r"\s+", query_text.lower()) if t]
    if not terms:
        return 0.0
    haystack = content.lower()
    hits = sum(haystack.count(term) for term in terms)
    if hits == 0:
        return 0.0
    return hits / (hits + len(terms))


def build_filter(query: SearchQuery) -> Optional[Filter]:
    """Qdrant ``must`` filter for the query's language/file/kind filters."""
    conditions = []
    if query.language:
        conditions.append(FieldCondition(key="language", match=MatchValue(value=query.language)))
    if query.file_path:
        conditions.append(FieldCondition(key="filePath", match=MatchValue(value=query.file_path)))
    if query.chunk_kind:
        conditions.append(FieldCondition(key="chunkType", match=MatchValue(value=query.chunk_kind)))
    if not conditions:
        return None
    return Filter(must=conditions)


def _to_candidate(point: Any, score: float) -> Candidate:
    return Candidate.from_payload({**(point.payload or {}), "score": score}, chunk_id=str(point.id))


class QdrantCandidateSource(CandidateSource):
    """Dense search via ``query_points``, keyword search by scrolling the collection
    and lookup of single chunks via ``retrieve``.

    The keyword scan stops early once ``keyword_timeout`` seconds have passed
    or ``keyword_max_chunks`` points were scanned, and scores what it has.
    """

    def __init__(
        self,
        url: str,
        collection_name: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        keyword_timeout: float = 10.0,
        keyword_max_chunks: int = 20000,
        client: Optional[AsyncQdrantClient] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.url = url.rstrip("/")
        self.collection_name = collection_name
        self.keyword_timeout = keyword_timeout
        self.keyword_max_chunks = keyword_max_chunks
        self.client = client or AsyncQdrantClient(url=self.url, api_key=api_key, timeout=int(timeout))
        self._clock = clock
        self.circuit_breaker = CircuitBreaker(
            name="vector_store",
            failure_threshold=5,
            recovery_timeout=30.0
        )

    async def _query(self, vector: List[float], query: SearchQuery, search_filter: Optional[Filter]) -> List[Any]:
        try:
            response = await self.client.query_points(
                collection_name=self.collection_name,
                query=vector,
                query_filter=search_filter,
                limit=query.limit,
                score_threshold=query.threshold,
                with_payload=True,
                with_vectors=False
            )
        except Exception as e:
            raise CandidateSourceError(
                f"Qdrant search failed (collection: {self.collection_name}): {e}"
            ) from e
        return response.points

    async def _scroll(self, search_filter: Optional[Filter], offset: Any):
        try:
            return await self.client.scroll(
                collection_name=self.collection_name,
                scroll_filter=search_filter,
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=False
            )
        except Exception as e:
            raise CandidateSourceError(
                f"Qdrant scroll failed (collection: {self.collection_name}): {e}"
            ) from e

    async def dense_search(self, query: SearchQuery, vector: List[float]) -> List[Candidate]:
        if not vector:
            raise CandidateSourceError("Query vector is empty")

        search_filter = build_filter(query)
        points = await self.circuit_breaker.call(self._query, vector, query, search_filter) or []
        candidates = [_to_candidate(point, point.score) for point in points]
        logger.debug("Dense search completed", results=len(candidates), filtered=search_filter is not None)
        return candidates

    async def keyword_search(self, query: SearchQuery, limit: int) -> List[Candidate]:
        text = query.normalized_text
        if not text:
            return []

        started = self._clock()
        scanned = 0
        offset = None
        points: List[Any] = []
        search_filter = build_filter(query)

        while True:
            batch, offset = await self.circuit_breaker.call(self._scroll, search_filter, offset)
            points.extend(batch)
            scanned += len(batch)

            if self._clock() - started > self.keyword_timeout:
                logger.warning("Keyword scan timed out, scoring partial scan", scanned=scanned)
                break
            if scanned >= self.keyword_max_chunks:
                logger.warning("Keyword scan reached chunk limit", scanned=scanned, limit=self.keyword_max_chunks)
                break
            if offset is None:
                break

        scored = []
        for point in points:
            score = keyword_score(text, str((point.payload or {}).get("content", "")))
            if score > 0:
                scored.append(_to_candidate(point, score))

        scored.sort(key=ranking_key)
        logger.debug("Keyword search completed", scanned=scanned, matched=len(scored))
        return scored[:limit]

    async def _retrieve(self, point_id: Any) -> List[Any]:
        try:
            return await self.client.retrieve(
                collection_name=self.collection_name,
                ids=[point_id],
                with_payload=True,
                with_vectors=False
            )
        except Exception as e:
            raise CandidateSourceError(
                f"Qdrant retrieve failed (collection: {self.collection_name}): {e}"
            ) from e

    async def get_chunk(self, chunk_id: str) -> Optional[Candidate]:
        # numeric ids were stringified when the chunk was first returned
        point_id: Any = int(chunk_id) if chunk_id.isdigit() else chunk_id
        points = await self.circuit_breaker.call(self._retrieve, point_id) or []
        if not points:
            return None
        return _to_candidate(points[0], 0.0)

    async def health_check(self) -> bool:
        try:
            await self.client.get_collection(self.collection_name)
            return True
        except Exception as e:
            logger.warning("Qdrant health check failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.client.close()
