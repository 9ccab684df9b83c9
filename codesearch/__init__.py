"""Code search service package.

Layout:
- ``common``: configuration, logging, metrics, tracing, errors and events.
- ``clients``: collaborator interfaces and HTTP clients (embeddings, vector
  store, reranker).
- ``retrievers``: query result cache.
- ``ranking``: fusion, context optimisation and rerank orchestration.
- ``context``: token-budgeted assembly of code references.
- ``hybrid``: the per-query search pipeline.
- ``api``: HTTP endpoints.
"""

__version__ = "0.1.0"
