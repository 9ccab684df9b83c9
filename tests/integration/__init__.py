"""Integration tests that exercise real infrastructure (Redis pub/sub)."""
