"""LLM utility endpoints: connection probe and ad hoc summarization."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import ValidationError

from pingq.api.dependencies import get_pipeline
from pingq.api.models import (
    ConnectionTestResponse,
    SettingsUpdate,
    SummarizeRequest,
    SummarizeResponse,
)
from pingq.pipeline import NotificationPipeline

router = APIRouter(prefix="/api", tags=["llm"])


@router.post("/llm/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    candidate: SettingsUpdate | None = None,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> ConnectionTestResponse:
    """Probe the backend with the current settings overlaid by ``candidate`` (nothing is applied)."""
    updates = candidate.changes() if candidate is not None else {}
    try:
        check = await pipeline.test_connection(updates)
    except ValidationError:
        return ConnectionTestResponse(success=False, error="Invalid settings")
    return ConnectionTestResponse(success=check.success, model_name=check.model_name, error=check.error)


@router.post("/summarize", response_model=SummarizeResponse)
async def summarize(
    request: SummarizeRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> SummarizeResponse:
    summary = await pipeline.summarize_text(request.content)
    return SummarizeResponse(success=summary is not None, summary=summary)
