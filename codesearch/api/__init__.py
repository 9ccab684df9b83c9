"""HTTP API for the code search service."""
