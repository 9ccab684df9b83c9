"""Result caching for the search pipeline.

The cache sits in front of retrieval: a hit skips embedding, search, fusion
and reranking entirely.
"""
