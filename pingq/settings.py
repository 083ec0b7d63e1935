"""
User-editable pipeline settings.

A flat pydantic model that the presentation layer reads and replaces as a
whole through ``NotificationPipeline.apply_settings``. Partial updates are
merged onto the current values before validation.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pingq.config import DEFAULT_API_ENDPOINT, DEFAULT_MIN_LENGTH_FOR_SUMMARY, DEFAULT_MODEL

DetectionMode = Literal["length", "smart"]
Provider = Literal["openai", "gemini"]


class PipelineSettings(BaseModel):
    """Settings that drive enrichment. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    enable_summarization: bool = False
    summary_detection_mode: DetectionMode = "length"
    min_length_for_summary: int = Field(default=DEFAULT_MIN_LENGTH_FOR_SUMMARY, ge=1)
    api_endpoint: str = DEFAULT_API_ENDPOINT
    api_key: str = ""
    model: str = DEFAULT_MODEL
    provider: Provider = "openai"

    @field_validator("api_endpoint", "api_key", "model", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value

    def merged(self, updates: Mapping[str, Any]) -> PipelineSettings:
        """Return a validated copy with ``updates`` applied; ``None`` values keep the current value."""
        data = self.model_dump()
        data.update({k: v for k, v in updates.items() if v is not None})
        return PipelineSettings.model_validate(data)

    def redacted(self) -> dict[str, Any]:
        """Dump for logs and API responses: the credential is reported as present/absent only."""
        data = self.model_dump()
        data["api_key"] = "***" if self.api_key else ""
        return data
