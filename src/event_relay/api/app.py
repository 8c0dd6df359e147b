"""FastAPI application factory."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from event_relay.config import settings
from event_relay.errors import (
    InvalidSubscriptionError,
    PermissionDeniedError,
    RelayError,
    SubscriptionNotFoundError,
)
from event_relay.logging_config import configure_logging
from event_relay.webhooks.dispatcher import get_webhook_dispatcher

logger = structlog.get_logger(__name__)

# Domain errors raised by administrative operations and their HTTP status
ERROR_STATUS_CODES: dict[type[RelayError], int] = {
    SubscriptionNotFoundError: 404,
    PermissionDeniedError: 403,
    InvalidSubscriptionError: 422,
}


class ErrorResponse(BaseModel):
    """Error response body."""

    error: str
    detail: dict[str, Any] | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: ARG001
    """Application lifespan handler."""
    logger.info("application_starting", environment=settings.ENVIRONMENT)

    yield

    logger.info("application_shutting_down")
    await get_webhook_dispatcher().shutdown()


def create_app(
    title: str = "Event Relay API",
    version: str | None = None,
    *,
    setup_logging: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        title: API title.
        version: API version (defaults to APP_VERSION).
        setup_logging: Configure structlog on creation.

    Returns:
        Configured FastAPI application.
    """
    if setup_logging:
        configure_logging()

    app = FastAPI(
        title=title,
        version=version or settings.APP_VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(
        request: Request, exc: RelayError  # noqa: ARG001
    ) -> JSONResponse:
        status_code = next(
            (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
            500,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=exc.message, detail=exc.details or None).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            ).model_dump(),
        )

    register_routes(app)

    return app


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    from event_relay.api.webhooks import admin_router, router

    app.include_router(router)
    app.include_router(admin_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check."""
        return {
            "status": "ok",
            "version": app.version,
            "timestamp": datetime.now(UTC).isoformat(),
        }
