"""Data model shared by every pipeline stage.

Queries and candidates are request-scoped. Candidates are treated as values:
stages return modified copies (``dataclasses.replace``) and never mutate the
lists they were given, so a cached list cannot be changed through a later
request.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional


class ChunkKind:
    """Well-known chunk kinds produced by the parser."""
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    MODULE = "module"
    INTERFACE = "interface"
    TYPE = "type"
    VARIABLE = "variable"
    IMPORT = "import"
    COMMENT = "comment"
    SECTION = "section"
    GENERIC = "generic"

    IMPLEMENTATION = frozenset({FUNCTION, CLASS, METHOD})


@dataclass(frozen=True)
class SearchQuery:
    """One search request.

    ``enable_hybrid`` and ``enable_reranking`` default to ``None`` which means
    "use the service configuration".
    """
    text: str
    language: Optional[str] = None
    chunk_kind: Optional[str] = None
    file_path: Optional[str] = None
    limit: int = 10
    threshold: float = 0.7
    enable_hybrid: Optional[bool] = None
    enable_reranking: Optional[bool] = None
    rerank_timeout_ms: Optional[int] = None
    max_per_file: Optional[int] = 3
    prefer_functions: bool = False
    prefer_classes: bool = False
    prefer_implementation: bool = True

    @property
    def normalized_text(self) -> str:
        return self.text.strip().lower()

    def wants_functions(self) -> bool:
        return self.prefer_functions or self.chunk_kind == ChunkKind.FUNCTION

    def wants_classes(self) -> bool:
        return self.prefer_classes or self.chunk_kind == ChunkKind.CLASS

    def with_limit(self, limit: int) -> "SearchQuery":
        return replace(self, limit=limit)


@dataclass
class ChunkMetadata:
    """Per-chunk flags reported by the indexer and the editor integration."""
    is_test: bool = False
    is_recently_modified: bool = False
    is_currently_open: bool = False
    function_name: Optional[str] = None
    class_name: Optional[str] = None
    complexity: Optional[float] = None


@dataclass
class HybridScore:
    """Scores a candidate received from each source during fusion.

    A candidate missing from one source carries 0.0 for it when both lists
    were blended. ``sparse`` is ``None`` only when fusion was skipped and a
    single list passed through unchanged, its scores reported as ``dense``.
    """
    dense: float
    sparse: Optional[float]
    combined: float


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


@dataclass
class Candidate:
    """One retrieved chunk.

    The core fields are always present; ``metadata``, ``hybrid_score``,
    ``reranked_score``, ``snippet`` and ``context`` are extensions filled in by
    later stages. ``snippet`` is the display excerpt of ``content`` and
    ``context`` a one-line description of where the chunk lives.
    """
    chunk_id: str
    file_path: str
    start_line: int
    end_line: int
    language: str
    chunk_kind: str
    content: str
    score: float
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    hybrid_score: Optional[HybridScore] = None
    reranked_score: Optional[float] = None
    snippet: Optional[str] = None
    context: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], chunk_id: Optional[str] = None) -> "Candidate":
        """Build a candidate from a (possibly partial) payload.

        Accepts snake_case and camelCase keys and a nested ``chunk`` object.
        Missing fields default to empty strings, zero lines, ``"unknown"``
        language, ``"generic"`` kind, score 0.0 and all-false metadata.
        """
        chunk = payload.get("chunk") if isinstance(payload.get("chunk"), Mapping) else {}
        source: Dict[str, Any] = {**chunk, **{k: v for k, v in payload.items() if k != "chunk"}}

        raw_meta = source.get("metadata")
        meta_source: Mapping[str, Any] = raw_meta if isinstance(raw_meta, Mapping) else {}
        metadata = ChunkMetadata(
            is_test=bool(_pick(meta_source, "is_test", "isTest", default=False)),
            is_recently_modified=bool(
                _pick(meta_source, "is_recently_modified", "isRecentlyModified", default=False)
            ),
            is_currently_open=bool(
                _pick(meta_source, "is_currently_open", "isCurrentlyOpen", default=False)
            ),
            function_name=_pick(source, "function_name", "functionName")
            or _pick(meta_source, "function_name", "functionName"),
            class_name=_pick(source, "class_name", "className")
            or _pick(meta_source, "class_name", "className"),
            complexity=_pick(meta_source, "complexity"),
        )

        resolved_id = chunk_id or _pick(source, "chunk_id", "chunkId", "id", default="")
        return cls(
            chunk_id=str(resolved_id),
            file_path=str(_pick(source, "file_path", "filePath", "path", default="")),
            start_line=int(_pick(source, "start_line", "startLine", default=0)),
            end_line=int(_pick(source, "end_line", "endLine", default=0)),
            language=str(_pick(source, "language", default="unknown")),
            chunk_kind=str(_pick(source, "chunk_kind", "chunkKind", "chunkType", "chunk_type",
                                 default=ChunkKind.GENERIC)),
            content=str(_pick(source, "content", "snippet", "text", default="")),
            score=float(_pick(source, "score", default=0.0)),
            metadata=metadata,
        )

    def with_score(self, score: float) -> "Candidate":
        return replace(self, score=score)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used by the HTTP layer and the reranker prompt."""
        data = {
            "chunk_id": self.chunk_id,
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "chunk_kind": self.chunk_kind,
            "content": self.content,
            "score": self.score,
            "metadata": {
                "is_test": self.metadata.is_test,
                "is_recently_modified": self.metadata.is_recently_modified,
                "is_currently_open": self.metadata.is_currently_open,
                "function_name": self.metadata.function_name,
                "class_name": self.metadata.class_name,
                "complexity": self.metadata.complexity,
            },
            "hybrid_score": None,
            "reranked_score": self.reranked_score,
            "snippet": self.snippet if self.snippet is not None else self.content,
            "context": self.context,
        }
        if self.hybrid_score is not None:
            data["hybrid_score"] = {
                "dense": self.hybrid_score.dense,
                "sparse": self.hybrid_score.sparse,
                "combined": self.hybrid_score.combined,
            }
        return data


def ranking_key(candidate: Candidate):
    """Sort key: score descending, then file path, then start line."""
    return (-candidate.score, candidate.file_path, candidate.start_line)


@dataclass(frozen=True)
class FilterTags:
    """Query filters remembered with a cache entry for invalidation."""
    language: Optional[str] = None
    chunk_kind: Optional[str] = None
    file_path: Optional[str] = None


@dataclass(frozen=True)
class CacheEntry:
    fingerprint: str
    query_text: str
    results: List[Candidate]
    created_at: float
    filter_tags: FilterTags


@dataclass
class CodeReference:
    """One or more line-adjacent candidates from the same file."""
    path: str
    start_line: int
    end_line: int
    merged_text: str
    average_score: float
    dominant_chunk_kind: str
    language: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    member_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "code_reference",
            "path": self.path,
            "lines": [self.start_line, self.end_line],
            "snippet": self.merged_text,
            "score": self.average_score,
            "chunk_kind": self.dominant_chunk_kind,
            "language": self.language,
            "metadata": dict(self.metadata),
            "member_ids": list(self.member_ids),
        }


@dataclass
class ContextWindow:
    token_budget: int
    tokens_used: int = 0
    references: List[CodeReference] = field(default_factory=list)
    truncated: bool = False
    summary: Optional[str] = None


@dataclass
class Deadline:
    """Per-request time budget passed explicitly between stages."""
    started_at: float
    timeout_s: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def start(cls, timeout_ms: float, clock: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(started_at=clock(), timeout_s=timeout_ms / 1000.0, clock=clock)

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> float:
        return self.timeout_s - self.elapsed()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass
class RerankOutcome:
    results: List[Candidate]
    reranked: bool
    reason: Optional[str] = None


@dataclass
class SearchOutcome:
    """Everything one pipeline run produced, before response formatting."""
    results: List[Candidate]
    cache_hit: bool = False
    hybrid_used: bool = False
    reranked: bool = False
    elapsed_ms: float = 0.0
