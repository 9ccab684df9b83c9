"""Search pipeline for hybrid dense and keyword code search.

Per query: validate, consult the cache, embed the query, fetch dense and
keyword candidates concurrently, fuse, optimize, optionally rerank, cut to the
requested limit, attach display snippets and cache the result. External calls each run under their own
timeout; a failure there surfaces as ``SearchStageError`` naming the stage,
while rerank problems only degrade the result.
"""

import asyncio
import time
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from ..clients.base import CandidateSource, EmbeddingProvider, Reranker
from ..clients.embedding import VoyageEmbeddingClient
from ..clients.qdrant import QdrantCandidateSource
from ..clients.reranker import LLMReranker
from ..common.config import SearchConfig
from ..common.errors import ChunkNotFoundError, QueryValidationError, SearchError, SearchStageError
from ..common.events import EventSubscriber, EventType, create_event_subscriber
from ..common.logging import log_performance
from ..common.metrics import MetricsCollector
from ..common.tracing import SearchTracer, get_search_tracer
from ..context.assembler import ContextAssembler
from ..context.snippets import post_process
from ..models import Candidate, ChunkKind, Deadline, SearchOutcome, SearchQuery
from ..ranking.fusion import ResultFusionEngine, create_fusion_engine
from ..ranking.optimizer import ContextOptimizer, OptimizationPreferences
from ..ranking.rerank import RerankOrchestrator
from ..retrievers.cache_manager import QueryCache, create_query_cache

logger = structlog.get_logger("search_pipeline")

FETCH_MULTIPLIER = 2
MIN_FETCH_LIMIT = 20
CONTEXT_MIN_LIMIT = 20
SIMILAR_THRESHOLD = 0.5
CODE_CONTEXT_LIMIT = 10
CODE_CONTEXT_THRESHOLD = 0.3
# a neighbour counts as nearby within context_lines * this many lines
CODE_CONTEXT_LINE_SPREAD = 10


class SearchPipeline:
    """Coordinates the search stages and owns the query cache.

    Responsibilities
    - Run the per-query stage sequence with timeouts, metrics and spans
    - Keep usage counters for ``get_stats``
    - Start and stop the cache sweep and the file-change listener
    """

    def __init__(
        self,
        config: SearchConfig,
        embedder: EmbeddingProvider,
        source: CandidateSource,
        reranker: Optional[Reranker] = None,
        cache: Optional[QueryCache] = None,
        fusion: Optional[ResultFusionEngine] = None,
        optimizer: Optional[ContextOptimizer] = None,
        assembler: Optional[ContextAssembler] = None,
        event_subscriber: Optional[EventSubscriber] = None,
        metrics: Optional[MetricsCollector] = None,
        tracer: Optional[SearchTracer] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.config = config
        self.embedder = embedder
        self.source = source
        self.reranker = reranker
        self.metrics = metrics
        self.tracer = tracer or get_search_tracer("code-search")
        self._clock = clock

        self.cache = cache or create_query_cache(
            ttl=config.search_cache_ttl,
            max_size=config.search_cache_max_size,
            max_cacheable_results=config.search_cache_max_results,
            metrics=metrics
        )
        self.fusion = fusion or create_fusion_engine(
            alpha=config.hybrid_search_alpha,
            enabled=config.enable_hybrid_search,
            adaptive_alpha=config.hybrid_adaptive_alpha
        )
        self.optimizer = optimizer or ContextOptimizer()
        self.reranking = RerankOrchestrator(
            reranker,
            enabled=config.enable_llm_reranking,
            metrics=metrics
        )
        self.assembler = assembler or ContextAssembler()

        self.event_subscriber = event_subscriber
        self._event_listener_task: Optional[asyncio.Task] = None
        if event_subscriber is not None:
            self._setup_event_handlers()

        self.stats: Dict[str, Any] = {
            "total_queries": 0,
            "failed_queries": 0,
            "cache_hits": 0,
            "hybrid_queries": 0,
            "reranked_queries": 0,
            "last_query_at": None,
        }

    def _setup_event_handlers(self) -> None:
        def handle_file_changed(event_data: Dict[str, Any]) -> None:
            path = event_data.get("path")
            if path:
                self.invalidate_file(path)
            # a new file can match any cached query of its language
            language = event_data.get("language")
            if language and event_data.get("change_type") == "created":
                self.invalidate_language(language)

        def handle_language_reindexed(event_data: Dict[str, Any]) -> None:
            language = event_data.get("language")
            if language:
                self.invalidate_language(language)

        self.event_subscriber.subscribe(EventType.FILE_CHANGED, handle_file_changed)
        self.event_subscriber.subscribe(EventType.LANGUAGE_REINDEXED, handle_language_reindexed)

    async def initialize(self) -> None:
        """Start the cache sweep and, when configured, the event listener."""
        await self.cache.start()
        if self.event_subscriber is not None and not self._event_listener_task:
            self._event_listener_task = asyncio.create_task(self._run_event_listener_with_retry())
            logger.info("Event listener started")
        logger.info(
            "Search pipeline initialized",
            hybrid=self.config.enable_hybrid_search,
            reranking=self.reranking.enabled
        )

    async def _run_event_listener_with_retry(self) -> None:
        max_retries = 5
        base_delay = 1.0

        for attempt in range(max_retries):
            try:
                await self.event_subscriber.start_listening()
                break
            except asyncio.CancelledError:
                logger.info("Event listener cancelled")
                raise
            except Exception as e:
                if attempt == max_retries - 1:
                    logger.error("Event listener failed after all retries", error=str(e))
                    break

                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Event listener failed, retrying",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e)
                )
                await asyncio.sleep(delay)

    async def _run_stage(self, stage: str, operation: Awaitable[Any], timeout: float) -> Any:
        """Await one external call, wrapping any failure as ``SearchStageError``."""
        started = time.perf_counter()
        try:
            with self.tracer.trace_stage(stage):
                return await asyncio.wait_for(operation, timeout=timeout)
        except asyncio.TimeoutError as e:
            self._record_stage_failure(stage)
            raise SearchStageError(stage, e, message=f"timed out after {timeout:.1f}s") from e
        except Exception as e:
            self._record_stage_failure(stage)
            raise SearchStageError(stage, e) from e
        finally:
            if self.metrics is not None:
                self.metrics.record_stage(stage, time.perf_counter() - started)

    def _record_stage_failure(self, stage: str) -> None:
        if self.metrics is not None:
            self.metrics.record_stage_failure(stage)

    def _elapsed_ms(self, started: float) -> float:
        return round((self._clock() - started) * 1000, 2)

    async def execute(self, query: SearchQuery) -> SearchOutcome:
        """Run the full pipeline and report how the result was produced."""
        if not query.text or not query.text.strip():
            raise QueryValidationError("Search query cannot be empty")
        if query.limit < 1:
            raise QueryValidationError(f"limit must be positive, got {query.limit}")

        started = self._clock()
        self.stats["total_queries"] += 1
        self.stats["last_query_at"] = time.time()

        try:
            outcome = await self._execute(query, started)
        except SearchError as e:
            self.stats["failed_queries"] += 1
            logger.error("Search failed", query=query.text[:50], error=str(e))
            raise

        query_type = "cached" if outcome.cache_hit else ("hybrid" if outcome.hybrid_used else "dense")
        if self.metrics is not None:
            self.metrics.record_search(query_type, outcome.elapsed_ms / 1000)
        log_performance("search", outcome.elapsed_ms, query_type=query_type, results=len(outcome.results))
        return outcome

    async def _execute(self, query: SearchQuery, started: float) -> SearchOutcome:
        with self.tracer.trace_search_query("code", query.limit, language=query.language or ""):
            cached = self.cache.get(query)
            if cached is not None:
                self.stats["cache_hits"] += 1
                logger.info("Search cache hit", query=query.text[:50], results=len(cached))
                return SearchOutcome(results=cached, cache_hit=True, elapsed_ms=self._elapsed_ms(started))

            timeout_ms = query.rerank_timeout_ms or self.config.search_timeout_ms
            deadline = Deadline.start(timeout_ms, clock=self._clock)

            vector = await self._run_stage(
                "embedding",
                self.embedder.generate_embedding(query.text, self.config.embedding_model, "query"),
                self.config.embedding_timeout_ms / 1000
            )

            fetch_query = query.with_limit(max(query.limit * FETCH_MULTIPLIER, MIN_FETCH_LIMIT))
            hybrid = self.fusion.hybrid_in_effect(query)
            dense, sparse = await self._fetch_candidates(fetch_query, vector, hybrid)
            hybrid_used = hybrid and bool(sparse)
            if hybrid_used:
                self.stats["hybrid_queries"] += 1

            with self.tracer.trace_stage("fusion"):
                ranked = self.fusion.rank(query, dense, sparse)
            with self.tracer.trace_stage("optimize"):
                ranked = self.optimizer.optimize(ranked, OptimizationPreferences.from_query(query))
            with self.tracer.trace_stage("rerank"):
                rerank_outcome = await self.reranking.rerank(query, ranked, deadline)
            if rerank_outcome.reranked:
                self.stats["reranked_queries"] += 1

            with self.tracer.trace_stage("post_process"):
                results = post_process(rerank_outcome.results[:query.limit], query.text)

            if self.cache.should_cache(query, results):
                self.cache.put(query, results)

            elapsed_ms = self._elapsed_ms(started)
            logger.info(
                "Search completed",
                query=query.text[:50],
                dense_count=len(dense),
                sparse_count=len(sparse),
                results_count=len(results),
                hybrid=hybrid_used,
                reranked=rerank_outcome.reranked,
                elapsed_ms=elapsed_ms
            )
            return SearchOutcome(
                results=results,
                cache_hit=False,
                hybrid_used=hybrid_used,
                reranked=rerank_outcome.reranked,
                elapsed_ms=elapsed_ms
            )

    async def _fetch_candidates(self, query: SearchQuery, vector: List[float], hybrid: bool):
        """Dense and keyword fetch in parallel; the first failure wins."""
        tasks = [
            asyncio.ensure_future(self._run_stage(
                "dense_search",
                self.source.dense_search(query, vector),
                self.config.dense_search_timeout_ms / 1000
            ))
        ]
        if hybrid:
            tasks.append(asyncio.ensure_future(self._run_stage(
                "keyword_search",
                self.source.keyword_search(query, query.limit),
                self.config.keyword_search_timeout_ms / 1000
            )))

        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        dense = results[0]
        sparse = results[1] if hybrid else []
        return dense, sparse

    async def search(self, query: SearchQuery) -> List[Candidate]:
        return (await self.execute(query)).results

    async def search_for_code_references(self, query: SearchQuery, token_budget: Optional[int] = None) -> Dict[str, Any]:
        """Search and package the results into a token-budgeted context window."""
        context_query = query.with_limit(max(query.limit, CONTEXT_MIN_LIMIT))
        outcome = await self.execute(context_query)

        budget = token_budget if token_budget is not None else self.config.default_token_budget
        window = self.assembler.assemble(outcome.results, budget)

        response: Dict[str, Any] = {
            "references": [reference.to_dict() for reference in window.references],
            "truncated": window.truncated,
            "context_window": {
                "token_budget": window.token_budget,
                "tokens_used": window.tokens_used,
            },
            "metadata": {
                "total_results": len(outcome.results),
                "elapsed_ms": outcome.elapsed_ms,
                "cache_hit": outcome.cache_hit,
                "hybrid_used": outcome.hybrid_used,
                "reranked": outcome.reranked,
            },
        }
        if window.truncated:
            response["summary"] = window.summary
        return response

    async def search_functions(self, text: str, language: Optional[str] = None, limit: int = 10) -> List[Candidate]:
        return await self.search(SearchQuery(
            text=text, language=language, chunk_kind=ChunkKind.FUNCTION, limit=limit, prefer_functions=True
        ))

    async def search_classes(self, text: str, language: Optional[str] = None, limit: int = 10) -> List[Candidate]:
        return await self.search(SearchQuery(
            text=text, language=language, chunk_kind=ChunkKind.CLASS, limit=limit, prefer_classes=True
        ))

    async def search_in_file(self, text: str, file_path: str, limit: int = 10) -> List[Candidate]:
        return await self.search(SearchQuery(text=text, file_path=file_path, limit=limit, max_per_file=None))

    async def search_by_language(self, text: str, language: str, limit: int = 10) -> List[Candidate]:
        return await self.search(SearchQuery(text=text, language=language, limit=limit))

    async def search_interfaces(self, text: str, language: Optional[str] = None, limit: int = 10) -> List[Candidate]:
        return await self.search(SearchQuery(
            text=text, language=language, chunk_kind=ChunkKind.INTERFACE, limit=limit
        ))

    async def get_chunk(self, chunk_id: str) -> Optional[Candidate]:
        return await self._run_stage(
            "chunk_lookup",
            self.source.get_chunk(chunk_id),
            self.config.dense_search_timeout_ms / 1000
        )

    async def find_similar(self, chunk_id: str, limit: int = 5) -> List[Candidate]:
        """Search with the chunk's own content, leaving the chunk itself out."""
        chunk = await self.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(f"Chunk not found: {chunk_id}")

        results = await self.search(SearchQuery(text=chunk.content, limit=limit + 1, threshold=SIMILAR_THRESHOLD))
        return [c for c in results if c.chunk_id != chunk_id][:limit]

    async def get_code_context(self, chunk_id: str, context_lines: int = 5) -> Optional[Dict[str, Any]]:
        """The chunk plus neighbouring chunks of its file, joined in line order.

        Returns ``None`` when the chunk does not exist.
        """
        chunk = await self.get_chunk(chunk_id)
        if chunk is None:
            return None

        neighbours = await self.search(SearchQuery(
            text=chunk.content,
            file_path=chunk.file_path,
            limit=CODE_CONTEXT_LIMIT,
            threshold=CODE_CONTEXT_THRESHOLD,
            max_per_file=None
        ))
        spread = context_lines * CODE_CONTEXT_LINE_SPREAD
        nearby = sorted(
            (c for c in neighbours if abs(c.start_line - chunk.start_line) <= spread),
            key=lambda c: c.start_line
        )
        context = "\n\n".join(f"// Lines {c.start_line}-{c.end_line}\n{c.content}" for c in nearby)
        return {"chunk": chunk, "context": context}

    def invalidate_file(self, file_path: str) -> int:
        return self.cache.invalidate_by_file(file_path)

    def invalidate_language(self, language: str) -> int:
        return self.cache.invalidate_by_language(language)

    def clear_caches(self) -> int:
        return self.cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        total = self.stats["total_queries"]

        def usage(count: int) -> float:
            return round(count / total * 100, 1) if total else 0.0

        return {
            "total_queries": total,
            "failed_queries": self.stats["failed_queries"],
            "last_query_at": self.stats["last_query_at"],
            "cache": self.cache.get_stats(),
            "usage_percent": {
                "cache_hit": usage(self.stats["cache_hits"]),
                "hybrid": usage(self.stats["hybrid_queries"]),
                "rerank": usage(self.stats["reranked_queries"]),
            },
            "hybrid_enabled": self.fusion.is_enabled(),
            "hybrid_alpha": self.fusion.alpha,
            "reranking_enabled": self.reranking.enabled and self.reranker is not None and self.reranker.is_enabled(),
        }

    async def health_check(self) -> bool:
        check = getattr(self.source, "health_check", None)
        if check is None:
            return True
        try:
            return bool(await check())
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def cleanup(self) -> None:
        """Stop background tasks and close collaborator clients."""
        if self._event_listener_task and not self._event_listener_task.done():
            self._event_listener_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._event_listener_task
        self._event_listener_task = None

        if self.event_subscriber is not None:
            await self.event_subscriber.close()

        await self.cache.stop()

        for client in (self.embedder, self.source, self.reranker):
            if client is None:
                continue
            try:
                await client.close()
            except Exception as e:
                logger.warning("Error closing client", client=type(client).__name__, error=str(e))

        logger.info("Search pipeline cleanup completed")


def create_search_pipeline(config: SearchConfig, metrics: Optional[MetricsCollector] = None) -> SearchPipeline:
    """Wire the pipeline with the HTTP clients described by ``config``."""
    embedder = VoyageEmbeddingClient(
        api_key=config.voyage_api_key,
        base_url=config.voyage_base_url,
        timeout=config.embedding_timeout_ms / 1000,
        retry_attempts=config.embedding_retry_attempts
    )
    source = QdrantCandidateSource(
        url=config.qdrant_url,
        collection_name=config.collection_name,
        api_key=config.qdrant_api_key,
        timeout=config.dense_search_timeout_ms / 1000,
        keyword_timeout=config.keyword_search_timeout_ms / 1000,
        keyword_max_chunks=config.keyword_search_max_chunks
    )
    reranker = LLMReranker(
        api_key=config.llm_reranker_api_key,
        model=config.llm_reranker_model,
        enabled=config.enable_llm_reranking,
        timeout=config.llm_reranker_timeout_ms / 1000
    )
    subscriber = None
    if config.file_events_enabled:
        subscriber = create_event_subscriber(config.cs_redis_url, config.file_events_channel_prefix)

    return SearchPipeline(
        config=config,
        embedder=embedder,
        source=source,
        reranker=reranker,
        event_subscriber=subscriber,
        metrics=metrics,
        tracer=get_search_tracer(config.cs_otel_service_name)
    )
