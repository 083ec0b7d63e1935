"""Health check endpoint for the pingq API."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends

from pingq.api.dependencies import get_pipeline
from pingq.config import APP_VERSION
from pingq.observability.telemetry import snapshot_counters
from pingq.pipeline import NotificationPipeline

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(pipeline: NotificationPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    """Health check endpoint.

    Reports store occupancy, connector state and whether enrichment is
    configured (no backend call is made).
    """
    return {
        "status": "healthy",
        "service": "pingq",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "store": {"size": pipeline.store.size(), "capacity": pipeline.store.capacity},
        "connector": {"connected": pipeline.is_connected},
        "enrichment": {
            "enabled": pipeline.backend.is_enabled(),
            "provider": pipeline.settings.provider,
            "in_flight": pipeline.coordinator.in_flight,
        },
        "counters": snapshot_counters("pipeline."),
    }
