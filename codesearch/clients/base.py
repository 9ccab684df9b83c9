"""Interfaces of the external collaborators the pipeline depends on.

The pipeline only talks to these abstractions; concrete HTTP clients live
next to this module and tests substitute in-memory fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..models import Candidate, SearchQuery


class EmbeddingProvider(ABC):
    """Turns text into a dense vector."""

    @abstractmethod
    async def generate_embedding(self, text: str, model: str, mode: str = "query") -> List[float]:
        """Embed ``text``; ``mode`` is ``query`` or ``document``."""

    async def close(self) -> None:
        return None


class CandidateSource(ABC):
    """Vector store returning ordered candidate lists."""

    @abstractmethod
    async def dense_search(self, query: SearchQuery, vector: List[float]) -> List[Candidate]:
        """Nearest-neighbour search, best first."""

    @abstractmethod
    async def keyword_search(self, query: SearchQuery, limit: int) -> List[Candidate]:
        """Lexical search, best first."""

    @abstractmethod
    async def get_chunk(self, chunk_id: str) -> Optional[Candidate]:
        """Fetch one stored chunk by id, ``None`` when it does not exist."""

    async def close(self) -> None:
        return None


@dataclass
class RerankResponse:
    """Reranker answer.

    ``results`` holds the ordered subset; items are candidates or plain
    payload dicts for chunks the reranker only knows by their fields.
    """
    reranked: bool
    results: List[Union[Candidate, Dict[str, Any]]] = field(default_factory=list)


class Reranker(ABC):
    """Secondary relevance model over a short shortlist."""

    @abstractmethod
    def is_enabled(self) -> bool:
        """Whether the reranker is configured and usable."""

    @abstractmethod
    async def rerank(self, query: str, candidates: List[Candidate], max_results: int) -> RerankResponse:
        """Order ``candidates`` by relevance to ``query``."""

    async def close(self) -> None:
        return None
