"""Clients for the external collaborators: embeddings, vector store, reranker."""
