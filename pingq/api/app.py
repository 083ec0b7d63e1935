"""FastAPI server for the pingq notification pipeline"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file before config is read
load_dotenv()

from fastapi import FastAPI, Request, status  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from pingq.api.routes.connector import router as connector_router  # noqa: E402
from pingq.api.routes.health import router as health_router  # noqa: E402
from pingq.api.routes.llm import router as llm_router  # noqa: E402
from pingq.api.routes.notifications import router as notifications_router  # noqa: E402
from pingq.api.routes.settings import router as settings_router  # noqa: E402
from pingq.config import API_HOST, API_PORT, APP_VERSION, is_production  # noqa: E402
from pingq.observability.logging import get_logger  # noqa: E402
from pingq.observability.telemetry import counter  # noqa: E402
from pingq.pipeline import NotificationPipeline  # noqa: E402
from pingq.storage.settings_repository import SettingsRepository  # noqa: E402

logger = get_logger(__name__)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Validation error handler that only exposes field names, not validation logic.

    Side Effects:
        - Logs the full validation errors for debugging
        - Increments the api.validation_errors counter
    """
    logger.warning("Validation error on %s: %s", request.url.path, exc.errors())
    counter("api.validation_errors")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


def create_app(pipeline: NotificationPipeline | None = None) -> FastAPI:
    """
    Build the API around ``pipeline``.

    Without an explicit pipeline one is created from the settings file at
    ``PINGQ_SETTINGS_PATH``.
    """
    if pipeline is None:
        pipeline = NotificationPipeline.from_repository(SettingsRepository())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("pingq API starting (version %s)", APP_VERSION)
        app.state.pipeline.bind_loop(asyncio.get_running_loop())
        yield
        # Let in-flight enrichment settle so no task is destroyed mid-request.
        await app.state.pipeline.drain()
        logger.info("pingq API stopped")

    app = FastAPI(title="pingq API", version=APP_VERSION, lifespan=lifespan)
    app.state.pipeline = pipeline

    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    if not is_production():
        app.add_middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )

    app.include_router(health_router)
    app.include_router(notifications_router)
    app.include_router(connector_router)
    app.include_router(settings_router)
    app.include_router(llm_router)
    return app


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(create_app(), host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
