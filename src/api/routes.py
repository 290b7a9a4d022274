"""FastAPI application for the webhook relay.

This module provides:
- Application factory with lifespan management of the webhook service
- /events endpoint for triggering events
- /health endpoint with delivery pipeline status
- Error handling mapping webhook errors to HTTP responses
- CORS configuration
"""

import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.api.webhooks import get_service
from src.api.webhooks import router as webhooks_router
from src.config import settings
from src.observability.logging import (
    bind_context,
    clear_context,
    configure_logging,
    is_configured,
)
from src.webhooks.errors import (
    NotFoundError,
    QueueFullError,
    ValidationError,
    WebhookError,
)
from src.webhooks.security import validate_events
from src.webhooks.service import WebhookService, create_webhook_service

logger = structlog.get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class TriggerEventRequest(BaseModel):
    """Request model for triggering an event."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "event_type": "translation.completed",
                    "payload": {"translation_id": "tr_123", "target_language": "es"},
                },
            ]
        }
    }

    event_type: str = Field(..., description="Event type (e.g., translation.completed)")
    payload: dict[str, Any] = Field(default_factory=dict, description="Event data")


class TriggerEventResponse(BaseModel):
    """Response model for a triggered event."""

    event_type: str
    deliveries: int = Field(..., description="Number of webhook deliveries queued")
    log_entry_ids: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    detail: str | None = Field(default=None, description="Detailed error information")


# ============================================================================
# Application Setup
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("application_starting")
    service: WebhookService = app.state.webhook_service
    await service.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await service.stop(drain=True)


OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Register webhook subscriptions and inspect their delivery history.",
    },
    {
        "name": "Events",
        "description": "Trigger events that are delivered to subscribed webhooks.",
    },
    {
        "name": "Health",
        "description": "Liveness and delivery pipeline status.",
    },
]

API_DESCRIPTION = """
## Overview

The Webhook Relay API notifies external subscribers about application events by
POSTing signed JSON payloads to their URLs, retrying failures with exponential
backoff and keeping a log of every delivery attempt.

Requests are scoped to an owner identified by the `X-Owner-ID` header.

## Quick Start

```bash
curl -X POST http://localhost:8000/webhooks \\
  -H "Content-Type: application/json" \\
  -H "X-Owner-ID: user_1" \\
  -d '{
    "url": "https://example.com/hooks",
    "events": ["translation.completed"]
  }'
```

## Verifying deliveries

Every delivery carries `X-Webhook-Signature: sha256=<hex>`, the HMAC-SHA256 of
the raw request body keyed with the webhook secret.
"""


def create_app(
    service: WebhookService | None = None,
    title: str = "Webhook Relay API",
    version: str = "1.0.0",
    description: str | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Webhook service (built from settings if not provided).
        title: API title.
        version: API version.
        description: API description (uses default if not provided).
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    if not is_configured():
        configure_logging(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)

    app = FastAPI(
        title=title,
        version=version,
        description=description or API_DESCRIPTION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=OPENAPI_TAGS,
    )
    app.state.webhook_service = service or create_webhook_service(settings)

    # Configure CORS
    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        clear_context()
        bind_context(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers["X-Request-ID"] = request_id
        return response

    # Add exception handlers
    @app.exception_handler(WebhookError)
    async def webhook_error_handler(
        request: Request, exc: WebhookError  # noqa: ARG001
    ) -> JSONResponse:
        if isinstance(exc, ValidationError):
            status_code = 400
        elif isinstance(exc, NotFoundError):
            status_code = 404
        elif isinstance(exc, QueueFullError):
            status_code = 503
        else:
            status_code = 500
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.message,
                detail=_format_details(exc.details),
            ).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="Invalid request",
                detail="; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in exc.errors()
                ),
            ).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
                detail=None,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception  # noqa: ARG001
    ) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="Internal server error",
                detail=str(exc) if app.debug else None,
            ).model_dump(),
        )

    # Register routes
    register_routes(app)

    return app


def _format_details(details: dict[str, Any]) -> str | None:
    if not details:
        return None
    return ", ".join(f"{key}={value}" for key, value in details.items())


def register_routes(app: FastAPI) -> None:
    """Register all routes on the application.

    Args:
        app: FastAPI application.
    """
    app.include_router(webhooks_router)

    @app.post(
        "/events",
        response_model=TriggerEventResponse,
        status_code=202,
        tags=["Events"],
        responses={
            202: {"description": "Event accepted for delivery"},
            400: {"description": "Unsupported event type"},
        },
    )
    async def trigger_event(
        request: TriggerEventRequest,
        owner_id: str | None = Header(default=None, alias="X-Owner-ID"),
        service: WebhookService = Depends(get_service),
    ) -> TriggerEventResponse:
        """Trigger an event.

        The event is delivered asynchronously to every active webhook
        subscribed to it. When ``X-Owner-ID`` is sent, only that owner's
        webhooks receive it.
        """
        (event_type,) = validate_events([request.event_type])
        entries = await service.trigger_event(event_type, request.payload, owner_id=owner_id)

        return TriggerEventResponse(
            event_type=event_type,
            deliveries=len(entries),
            log_entry_ids=[e.id for e in entries],
        )

    @app.get("/health", tags=["Health"])
    async def health(
        service: WebhookService = Depends(get_service),
    ) -> dict[str, Any]:
        """Liveness check with delivery pipeline status."""
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "scheduler_running": service.scheduler.running,
            "queue_depth": service.queue_depth,
            "pending_retries": service.pending_retries,
        }


# Create default app instance
app = create_app()
