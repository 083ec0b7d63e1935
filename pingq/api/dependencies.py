"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from pingq.pipeline import NotificationPipeline


def get_pipeline(request: Request) -> NotificationPipeline:
    """The pipeline attached to the app by ``create_app``."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Pipeline not initialized",
        )
    return pipeline
