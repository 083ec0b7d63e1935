"""LLM enrichment: summaries, categories and event extraction."""
