"""Hybrid search orchestration."""
