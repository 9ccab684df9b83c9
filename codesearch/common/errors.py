"""Exception taxonomy for the search pipeline and its collaborators.

- ``QueryValidationError``: bad input, rejected before any cache or network use.
- ``SearchStageError``: an external dependency failed; carries the stage name
  and chains the original cause.
- ``ChunkNotFoundError``: a chunk-id based operation named an unknown chunk.
- ``CollaboratorError`` and subclasses: raised by HTTP clients.
- ``RerankerError``: raised by reranker clients, always absorbed by the
  rerank orchestrator.
"""

from typing import Optional


class SearchError(Exception):
    """Base exception for the search service."""
    pass


class QueryValidationError(SearchError, ValueError):
    """The query cannot be executed as given."""
    pass


class SearchStageError(SearchError):
    """A pipeline stage failed because an external dependency failed."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.stage = stage
        self.cause = cause
        if message:
            detail = message
        elif cause is not None:
            # TimeoutError and friends stringify to ""
            detail = str(cause) or type(cause).__name__
        else:
            detail = "unknown error"
        super().__init__(f"Search failed at stage '{stage}': {detail}")


class CollaboratorError(SearchError):
    """Base exception for external collaborator clients."""
    pass


class EmbeddingServiceError(CollaboratorError):
    """Embedding generation failed."""
    pass


class CandidateSourceError(CollaboratorError):
    """Dense or keyword search against the vector store failed."""
    pass


class ChunkNotFoundError(SearchError, LookupError):
    """No stored chunk has the requested id."""
    pass


class RerankerError(CollaboratorError):
    """The external reranker failed or returned an unusable response."""
    pass


class CircuitBreakerError(CollaboratorError):
    """A collaborator's circuit breaker is open and rejected the call."""
    pass
