"""pingq: notification ingestion and LLM enrichment pipeline."""

__version__ = "0.3.0"
