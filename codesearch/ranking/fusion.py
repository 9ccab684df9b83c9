"""Result fusion for hybrid code search.

Dense (embedding) and sparse (keyword) candidate lists are blended with a
weighted score, then two independent scoring passes run over the merged list:

- implementation boosting is multiplicative and is NOT clamped,
- metadata boosting is additive and IS clamped to 1.0.
"""

import re
from dataclasses import replace
from typing import Dict, List, Optional

import structlog

from ..models import Candidate, ChunkKind, HybridScore, SearchQuery, ranking_key

logger = structlog.get_logger("search_fusion")

DOC_EXTENSIONS = frozenset({"md", "txt", "rst", "adoc", "asciidoc"})
DOC_PATH_MARKERS = ("readme", "changelog", "license", "contributing", "docs/", "documentation/")

IMPLEMENTATION_FILE_BOOST = 1.30
DOCUMENTATION_FILE_PENALTY = 0.85
IMPLEMENTATION_KIND_BOOST = 1.15

RECENTLY_MODIFIED_BOOST = 0.10
CURRENTLY_OPEN_BOOST = 0.15
NON_TEST_BOOST = 0.05

SEMANTIC_INDICATORS = (
    "how to", "what is", "explain", "implement", "create", "build",
    "algorithm", "pattern", "similar to", "like", "example",
)
EXACT_MATCH_PATTERNS = (
    re.compile(r"[a-z][A-Z]"),       # camelCase
    re.compile(r"_[a-z]"),           # snake_case
    re.compile(r"^[A-Z][a-z]+$"),    # PascalCase word
    re.compile(r"^\w+\(\)$"),        # call
    re.compile(r"^[\w.]+$"),         # dotted name
)


def is_documentation_file(file_path: str) -> bool:
    """Classify a file as documentation by extension or path markers."""
    lowered = file_path.replace("\\", "/").lower()
    name = lowered.rsplit("/", 1)[-1]
    if "." in name and name.rsplit(".", 1)[-1] in DOC_EXTENSIONS:
        return True
    return any(marker in lowered for marker in DOC_PATH_MARKERS)


class WeightedScoreFusion:
    """Weighted blend of dense and sparse scores.

    ``combined = alpha * dense + (1 - alpha) * sparse`` where a source that did
    not return a candidate contributes 0. Raw source scores are used as-is.
    """

    def __init__(self, alpha: float = 0.7):
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {alpha}")
        self.alpha = alpha

    def fuse_results(
        self,
        dense_results: List[Candidate],
        sparse_results: List[Candidate],
        alpha: Optional[float] = None
    ) -> List[Candidate]:
        """Merge both lists by ``chunk_id`` and sort by combined score."""
        weight = self.alpha if alpha is None else alpha

        dense_map: Dict[str, Candidate] = {}
        for candidate in dense_results:
            dense_map.setdefault(candidate.chunk_id, candidate)
        sparse_map: Dict[str, Candidate] = {}
        for candidate in sparse_results:
            sparse_map.setdefault(candidate.chunk_id, candidate)

        # dense order first, then sparse-only ids, for a deterministic merge
        ordered_ids = list(dense_map) + [cid for cid in sparse_map if cid not in dense_map]

        fused: List[Candidate] = []
        for chunk_id in ordered_ids:
            dense = dense_map.get(chunk_id)
            sparse = sparse_map.get(chunk_id)
            dense_score = dense.score if dense is not None else 0.0
            sparse_score = sparse.score if sparse is not None else 0.0
            combined = weight * dense_score + (1 - weight) * sparse_score

            base = dense if dense is not None else sparse
            fused.append(replace(
                base,
                score=combined,
                hybrid_score=HybridScore(dense=dense_score, sparse=sparse_score, combined=combined),
            ))

        fused.sort(key=ranking_key)

        logger.debug(
            "Weighted score fusion completed",
            dense_count=len(dense_results),
            sparse_count=len(sparse_results),
            fused_count=len(fused),
            alpha=weight
        )
        return fused


class ResultFusionEngine:
    """Merges dense and sparse lists and applies deterministic score boosts.

    Parameters
    - alpha: Dense weight of the blend (0.7 = 70% dense, 30% sparse)
    - enabled: Global hybrid switch; when off only the dense list is used
    - adaptive_alpha: Shift alpha per query based on its phrasing
    """

    def __init__(self, alpha: float = 0.7, enabled: bool = True, adaptive_alpha: bool = False):
        self.fusion = WeightedScoreFusion(alpha)
        self.enabled = enabled
        self.adaptive = adaptive_alpha

    @property
    def alpha(self) -> float:
        return self.fusion.alpha

    def is_enabled(self) -> bool:
        return self.enabled

    def hybrid_in_effect(self, query: SearchQuery) -> bool:
        """Whether this query should fetch and blend sparse results."""
        requested = query.enable_hybrid if query.enable_hybrid is not None else True
        return self.enabled and requested

    def adaptive_alpha(self, text: str) -> float:
        """Shift alpha towards dense for semantic phrasing, sparse for identifiers."""
        adapted = self.alpha
        lowered = text.lower()
        if any(indicator in lowered for indicator in SEMANTIC_INDICATORS):
            adapted = min(1.0, self.alpha + 0.1)
        stripped = text.strip()
        if any(pattern.search(stripped) for pattern in EXACT_MATCH_PATTERNS):
            adapted = max(0.0, self.alpha - 0.2)
        return adapted

    def combine(
        self,
        query: SearchQuery,
        dense_results: List[Candidate],
        sparse_results: List[Candidate]
    ) -> List[Candidate]:
        """Steps 1-3: pass-through or weighted blend, sorted."""
        if not self.hybrid_in_effect(query) or not sparse_results:
            source = dense_results if dense_results else sparse_results
            return [
                replace(c, hybrid_score=HybridScore(dense=c.score, sparse=None, combined=c.score))
                for c in source
            ]

        alpha = self.adaptive_alpha(query.text) if self.adaptive else self.alpha
        logger.info(
            "Combining dense and sparse results",
            dense_count=len(dense_results),
            sparse_count=len(sparse_results),
            alpha=alpha
        )
        return self.fusion.fuse_results(dense_results, sparse_results, alpha=alpha)

    @staticmethod
    def apply_implementation_boost(candidates: List[Candidate]) -> List[Candidate]:
        """Multiplicative, unclamped boost favouring implementation chunks."""
        boosted = []
        for candidate in candidates:
            factor = (
                DOCUMENTATION_FILE_PENALTY
                if is_documentation_file(candidate.file_path)
                else IMPLEMENTATION_FILE_BOOST
            )
            if candidate.chunk_kind in ChunkKind.IMPLEMENTATION:
                factor *= IMPLEMENTATION_KIND_BOOST
            boosted.append(candidate.with_score(candidate.score * factor))
        return boosted

    @staticmethod
    def apply_metadata_boost(candidates: List[Candidate]) -> List[Candidate]:
        """Additive boost from file metadata, clamped to 1.0."""
        boosted = []
        for candidate in candidates:
            meta = candidate.metadata
            boost = 0.0
            if meta.is_recently_modified:
                boost += RECENTLY_MODIFIED_BOOST
            if meta.is_currently_open:
                boost += CURRENTLY_OPEN_BOOST
            if not meta.is_test:
                boost += NON_TEST_BOOST
            boosted.append(candidate.with_score(min(1.0, candidate.score + boost)))
        return boosted

    def rank(
        self,
        query: SearchQuery,
        dense_results: List[Candidate],
        sparse_results: List[Candidate]
    ) -> List[Candidate]:
        """Full fusion: combine, boost, and re-sort."""
        ranked = self.combine(query, dense_results, sparse_results)
        if query.prefer_implementation:
            ranked = self.apply_implementation_boost(ranked)
        ranked = self.apply_metadata_boost(ranked)
        ranked.sort(key=ranking_key)
        return ranked


def create_fusion_engine(alpha: float = 0.7, enabled: bool = True, adaptive_alpha: bool = False) -> ResultFusionEngine:
    """Create a result fusion engine."""
    return ResultFusionEngine(alpha=alpha, enabled=enabled, adaptive_alpha=adaptive_alpha)
