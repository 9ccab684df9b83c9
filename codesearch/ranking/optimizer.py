"""Post-fusion reshaping of a ranked candidate list.

Runs after fusion and before reranking. Every step returns a new list; the
final step always re-sorts by score.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from ..models import Candidate, ChunkKind, SearchQuery, ranking_key

logger = structlog.get_logger("context_optimizer")

CHUNK_KIND_BOOST = 0.1
MIN_PER_LANGUAGE = 2


@dataclass
class OptimizationPreferences:
    """Knobs derived from a query for one ``optimize`` run."""
    prefer_functions: bool = False
    prefer_classes: bool = False
    diversify_languages: bool = True
    max_per_file: Optional[int] = 3

    @classmethod
    def from_query(cls, query: SearchQuery) -> "OptimizationPreferences":
        return cls(
            prefer_functions=query.wants_functions(),
            prefer_classes=query.wants_classes(),
            # a language filter already pins the result set to one language
            diversify_languages=not query.language,
            max_per_file=query.max_per_file,
        )


class ContextOptimizer:
    """Chunk-kind preference boosts, language diversification and per-file caps."""

    def __init__(self, chunk_kind_boost: float = CHUNK_KIND_BOOST):
        self.chunk_kind_boost = chunk_kind_boost

    @staticmethod
    def boost_by_chunk_kind(candidates: List[Candidate], kind: str, delta: float) -> List[Candidate]:
        """Add ``delta`` to every candidate of ``kind``, clamped to 1.0."""
        return [
            c.with_score(min(1.0, c.score + delta)) if c.chunk_kind == kind else c
            for c in candidates
        ]

    @staticmethod
    def diversify_by_language(candidates: List[Candidate]) -> List[Candidate]:
        """Cap each language group to ``max(2, n // languages)``.

        Groups are concatenated in first-seen order with their internal order
        kept; this is an approximate cap, not a round-robin interleave.
        """
        if not candidates:
            return []

        groups: Dict[str, List[Candidate]] = {}
        for candidate in candidates:
            groups.setdefault(candidate.language, []).append(candidate)

        cap = max(MIN_PER_LANGUAGE, len(candidates) // len(groups))
        diversified: List[Candidate] = []
        for group in groups.values():
            diversified.extend(group[:cap])
        return diversified

    @staticmethod
    def limit_per_file(candidates: List[Candidate], max_per_file: int) -> List[Candidate]:
        """Keep the first ``max_per_file`` candidates of each file."""
        counts: Dict[str, int] = {}
        limited = []
        for candidate in candidates:
            seen = counts.get(candidate.file_path, 0)
            if seen < max_per_file:
                limited.append(candidate)
                counts[candidate.file_path] = seen + 1
        return limited

    def optimize(self, candidates: List[Candidate], preferences: OptimizationPreferences) -> List[Candidate]:
        optimized = list(candidates)

        if preferences.prefer_functions:
            optimized = self.boost_by_chunk_kind(optimized, ChunkKind.FUNCTION, self.chunk_kind_boost)
        if preferences.prefer_classes:
            optimized = self.boost_by_chunk_kind(optimized, ChunkKind.CLASS, self.chunk_kind_boost)

        if preferences.diversify_languages:
            optimized = self.diversify_by_language(optimized)

        if preferences.max_per_file:
            optimized = self.limit_per_file(optimized, preferences.max_per_file)

        optimized.sort(key=ranking_key)

        logger.debug(
            "Optimized candidates",
            input_count=len(candidates),
            output_count=len(optimized),
            max_per_file=preferences.max_per_file
        )
        return optimized
