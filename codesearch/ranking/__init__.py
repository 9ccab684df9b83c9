"""Ranking stages: fusion, optimization and reranking."""
