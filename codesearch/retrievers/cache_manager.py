"""In-memory cache for final search result lists.

Entries are keyed by a fingerprint of the normalized query and its filters,
expire after a TTL, and are evicted oldest-first (by creation time) when the
store is full. A background asyncio task sweeps expired entries; it and the
request path share one coarse lock around the store.
"""

import asyncio
import copy
import hashlib
import json
import threading
import time
from contextlib import suppress
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..common.metrics import MetricsCollector
from ..models import CacheEntry, Candidate, FilterTags, SearchQuery

logger = structlog.get_logger("search_cache")

# Rough per-entry footprint used for the memory estimate.
ESTIMATED_ENTRY_BYTES = 1024
MIN_CACHEABLE_QUERY_LENGTH = 3


class QueryCache:
    """TTL and capacity bounded store of search results.

    Parameters
    - ttl: Seconds an entry stays valid
    - max_size: Entries kept before the oldest is evicted
    - max_cacheable_results: Result lists longer than this are never cached
    - sweep_interval: Seconds between background sweeps (defaults to ``ttl``)
    - clock: Wall-clock source, injectable for tests
    - metrics: Optional collector receiving hit/miss counters
    """

    def __init__(
        self,
        ttl: float = 300,
        max_size: int = 1000,
        max_cacheable_results: int = 100,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.max_cacheable_results = max_cacheable_results
        self.sweep_interval = sweep_interval if sweep_interval is not None else ttl
        self._clock = clock
        self._metrics = metrics

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hit_count = 0
        self._miss_count = 0
        self._sweep_task: Optional[asyncio.Task] = None

    @staticmethod
    def fingerprint(query: SearchQuery) -> str:
        """Deterministic key over normalized text, filters, limit and threshold."""
        key_data = {
            "query": query.normalized_text,
            "language": query.language or "",
            "chunk_kind": query.chunk_kind or "",
            "file_path": query.file_path or "",
            "limit": query.limit,
            "threshold": query.threshold,
        }
        serialized = json.dumps(key_data, sort_keys=True)
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl

    def get(self, query: SearchQuery) -> Optional[List[Candidate]]:
        """Return a deep copy of the cached results, or ``None`` on a miss."""
        key = self.fingerprint(query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._miss_count += 1
                hit = False
            elif self._is_expired(entry, self._clock()):
                del self._entries[key]
                self._miss_count += 1
                hit = False
                logger.debug("Expired cache entry evicted on read", query=query.text[:50])
            else:
                self._hit_count += 1
                hit = True
                results = copy.deepcopy(entry.results)

        if self._metrics is not None:
            if hit:
                self._metrics.record_cache_hit("search_results")
            else:
                self._metrics.record_cache_miss("search_results")

        if not hit:
            return None
        logger.debug("Search results cache hit", query=query.text[:50], count=len(results))
        return results

    def put(self, query: SearchQuery, results: List[Candidate]) -> bool:
        """Store results; returns ``False`` when the list is not admissible."""
        if not results or len(results) > self.max_cacheable_results:
            return False

        key = self.fingerprint(query)
        entry = CacheEntry(
            fingerprint=key,
            query_text=query.text,
            results=copy.deepcopy(results),
            created_at=self._clock(),
            filter_tags=FilterTags(
                language=query.language,
                chunk_kind=query.chunk_kind,
                file_path=query.file_path,
            ),
        )

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_oldest()
            self._entries[key] = entry

        logger.debug("Search results cached", query=query.text[:50], count=len(results))
        return True

    def _evict_oldest(self) -> None:
        # Caller holds the lock. Creation time, not last access.
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        logger.debug("Evicted oldest cache entry", key=oldest_key[:12])

    def should_cache(self, query: SearchQuery, results: List[Candidate]) -> bool:
        """Policy deciding whether a finished search is worth caching."""
        if query.file_path:
            return False
        if not results:
            return False
        if len(results) > self.max_cacheable_results:
            return False
        if len(query.text.strip()) < MIN_CACHEABLE_QUERY_LENGTH:
            return False
        return True

    def invalidate_by_file(self, file_path: str) -> int:
        """Drop entries whose results or file filter reference ``file_path``."""
        with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if entry.filter_tags.file_path == file_path
                or any(result.file_path == file_path for result in entry.results)
            ]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.info("Invalidated cache entries for file", file_path=file_path, count=len(stale))
        return len(stale)

    def invalidate_by_language(self, language: str) -> int:
        """Drop entries whose results or language filter reference ``language``."""
        with self._lock:
            stale = [
                key for key, entry in self._entries.items()
                if entry.filter_tags.language == language
                or any(result.language == language for result in entry.results)
            ]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.info("Invalidated cache entries for language", language=language, count=len(stale))
        return len(stale)

    def sweep(self) -> int:
        """Remove every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.info("Cleaned up expired cache entries", count=len(expired))
        return len(expired)

    def clear(self) -> int:
        """Drop all entries and reset hit/miss counters."""
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            self._hit_count = 0
            self._miss_count = 0
        logger.info("Cleared cache", entries=size)
        return size

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
            hits = self._hit_count
            misses = self._miss_count

        lookups = hits + misses
        hit_rate = hits / lookups if lookups else 0.0
        return {
            "size": size,
            "max_size": self.max_size,
            "hit_count": hits,
            "miss_count": misses,
            "hit_rate": round(hit_rate, 2),
            "ttl": self.ttl,
            "memory_usage": size * ESTIMATED_ENTRY_BYTES,
        }

    def entries(self) -> List[Dict[str, Any]]:
        """Debug listing of live entries, newest first."""
        with self._lock:
            now = self._clock()
            listing = [
                {
                    "key": key,
                    "query": entry.query_text,
                    "result_count": len(entry.results),
                    "age": round(now - entry.created_at),
                    "filters": {
                        "language": entry.filter_tags.language,
                        "chunk_kind": entry.filter_tags.chunk_kind,
                        "file_path": entry.filter_tags.file_path,
                    },
                }
                for key, entry in self._entries.items()
            ]
        return sorted(listing, key=lambda item: item["age"])

    async def start(self) -> None:
        """Start the background TTL sweep."""
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Cache sweep started", interval=self.sweep_interval, ttl=self.ttl)

    async def stop(self) -> None:
        """Stop the background sweep and wait for it to finish."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweep_task
        self._sweep_task = None
        logger.info("Cache sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))


def create_query_cache(
    ttl: float = 300,
    max_size: int = 1000,
    max_cacheable_results: int = 100,
    metrics: Optional[MetricsCollector] = None
) -> QueryCache:
    """Create a query cache."""
    return QueryCache(
        ttl=ttl,
        max_size=max_size,
        max_cacheable_results=max_cacheable_results,
        metrics=metrics
    )
