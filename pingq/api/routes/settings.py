"""Settings endpoints. The API key is never returned in clear text."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from pingq.api.dependencies import get_pipeline
from pingq.api.models import SettingsUpdate
from pingq.observability.logging import get_logger
from pingq.pipeline import NotificationPipeline

logger = get_logger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("")
async def get_settings(pipeline: NotificationPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    return pipeline.settings.redacted()


@router.put("")
async def update_settings(
    update: SettingsUpdate,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Apply a partial update; takes effect for the next enrichment call."""
    try:
        applied = pipeline.apply_settings(update.changes())
    except ValidationError as e:
        logger.warning("Rejected settings update: %s", e.errors())
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid settings"
        ) from e
    return applied.redacted()
