"""Context assembly for LLM consumers."""
