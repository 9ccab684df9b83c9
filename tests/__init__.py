"""Tests for the code search service.

Unit tests run against in-memory fakes of the embedding, vector store and
reranker collaborators. Tests under ``integration`` need a running Redis.
"""
