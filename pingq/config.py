"""Centralized configuration for the pingq notification pipeline.

Typed constants for the store, pagination, LLM transport and API settings.
Environment variable overrides use safe defaults so the service starts
without extra configuration. Runtime-mutable settings (the ones a user edits)
live in ``pingq.settings.PipelineSettings`` instead.
"""

from __future__ import annotations

import os
from pathlib import Path

# --- App ---
APP_VERSION: str = "0.3.0"
ENV: str = os.getenv("PINGQ_ENV", "development")

# --- Notification store ---
MAX_NOTIFICATIONS: int = int(os.getenv("PINGQ_MAX_NOTIFICATIONS", "1000"))

# --- Pagination ---
INITIAL_PAGE_SIZE: int = 20
MAX_PAGE_SIZE: int = 200

# --- LLM ---
DEFAULT_API_ENDPOINT: str = "https://api.openai.com/v1"
DEFAULT_MODEL: str = "gpt-4o-mini"
CONNECTION_TEST_MODEL: str = "gpt-3.5-turbo"
LLM_TIMEOUT_SECONDS: float = float(os.getenv("PINGQ_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("PINGQ_LLM_MAX_RETRIES", "2"))
LLM_RETRY_MAX_DELAY: float = float(os.getenv("PINGQ_LLM_RETRY_MAX_DELAY", "4.0"))

# --- Gemini (Vertex AI provider) ---
GOOGLE_CLOUD_PROJECT: str | None = os.getenv("GOOGLE_CLOUD_PROJECT")
GEMINI_LOCATION: str = os.getenv("GEMINI_LOCATION", "us-central1")

# --- Enrichment ---
DEFAULT_MIN_LENGTH_FOR_SUMMARY: int = 100
EVENT_PAST_TOLERANCE_MINUTES: int = 60

# --- Settings persistence ---
SETTINGS_PATH: Path = Path(
    os.getenv("PINGQ_SETTINGS_PATH", str(Path.home() / ".pingq" / "settings.json"))
).expanduser()

# --- API ---
API_HOST: str = os.getenv("PINGQ_API_HOST", "127.0.0.1")
API_PORT: int = int(os.getenv("PINGQ_API_PORT", "8000"))
STREAM_QUEUE_SIZE: int = 256


def is_production() -> bool:
    """Check if running in production"""
    return ENV == "production"
