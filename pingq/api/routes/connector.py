"""Connector inbound endpoints for an out-of-process chat connector."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from pingq.api.dependencies import get_pipeline
from pingq.api.models import ConnectorReadyRequest, RawEventPayload
from pingq.pipeline import NotificationPipeline

router = APIRouter(prefix="/api", tags=["connector"])


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    payload: RawEventPayload,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Ingest one raw chat event.

    Malformed and duplicate events are dropped, not rejected: the connector
    has nothing useful to do with an error.
    """
    record = pipeline.on_event(payload.model_dump())
    return {
        "accepted": record is not None,
        "notification": record.to_dict() if record is not None else None,
    }


@router.post("/connector/ready")
async def connector_ready(
    request: ConnectorReadyRequest,
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    pipeline.on_ready(guild.model_dump() for guild in request.guilds)
    return {"connected": True, "guilds": len(pipeline.directory)}


@router.post("/connector/disconnect")
async def connector_disconnect(
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    pipeline.on_disconnect()
    return {"connected": False}


@router.get("/connector/status")
async def connector_status(
    pipeline: NotificationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    return {"connected": pipeline.is_connected, "guilds": len(pipeline.directory)}
