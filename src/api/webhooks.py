"""Webhook management API endpoints.

Provides REST API for managing webhook registrations and
viewing delivery history.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from src.webhooks.models import (
    DeliveryLogEntry,
    DeliveryStatus,
    RetryPolicy,
    Subscription,
    WebhookRegistration,
    WebhookStats,
    WebhookStatsSummary,
    WebhookUpdate,
)
from src.webhooks.service import WebhookService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ============================================================================
# Dependencies
# ============================================================================


def get_service(request: Request) -> WebhookService:
    """Webhook service attached to the running application."""
    return request.app.state.webhook_service


def get_owner_id(owner_id: str = Header(..., alias="X-Owner-ID", min_length=1)) -> str:
    """Owning principal taken from the ``X-Owner-ID`` header."""
    return owner_id


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook details response."""

    id: str
    url: str
    events: list[str]
    secret: str | None
    headers: dict[str, str]
    retry_policy: RetryPolicy
    metadata: dict[str, Any]
    active: bool
    stats: WebhookStats
    last_triggered: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "WebhookResponse":
        """Create response from Subscription model."""
        return cls(
            id=subscription.id,
            url=subscription.url,
            events=subscription.events,
            secret=subscription.secret,
            headers=subscription.headers,
            retry_policy=subscription.retry_policy,
            metadata=subscription.metadata,
            active=subscription.active,
            stats=subscription.stats,
            last_triggered=(
                subscription.last_triggered.isoformat() if subscription.last_triggered else None
            ),
            created_at=subscription.created_at.isoformat(),
            updated_at=subscription.updated_at.isoformat(),
        )


class DeliveryAttemptResponse(BaseModel):
    """One recorded delivery attempt."""

    timestamp: str
    status_code: int
    response_time_ms: float
    error: str | None
    success: bool


class DeliveryLogResponse(BaseModel):
    """Delivery log entry response."""

    id: str
    webhook_id: str
    event_type: str
    payload: dict[str, Any]
    attempts: list[DeliveryAttemptResponse]
    final_status: DeliveryStatus
    created_at: str
    updated_at: str

    @classmethod
    def from_entry(cls, entry: DeliveryLogEntry) -> "DeliveryLogResponse":
        """Create response from DeliveryLogEntry model."""
        return cls(
            id=entry.id,
            webhook_id=entry.subscription_id,
            event_type=entry.event_type,
            payload=entry.payload,
            attempts=[
                DeliveryAttemptResponse(
                    timestamp=a.timestamp.isoformat(),
                    status_code=a.status_code,
                    response_time_ms=a.response_time_ms,
                    error=a.error,
                    success=a.success,
                )
                for a in entry.attempts
            ],
            final_status=entry.final_status,
            created_at=entry.created_at.isoformat(),
            updated_at=entry.updated_at.isoformat(),
        )


class DeleteResponse(BaseModel):
    """Result of a delete request."""

    success: bool


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=WebhookResponse,
    responses={
        201: {"description": "Webhook created"},
        400: {"description": "Invalid request"},
    },
    status_code=201,
)
async def create_webhook(
    request: WebhookRegistration,
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> WebhookResponse:
    """Register a new webhook.

    Creates a webhook subscription that will receive events at the specified URL.
    A secret key is generated for HMAC signature verification unless one is given.
    """
    webhook = await service.register_webhook(owner_id, request)
    return WebhookResponse.from_subscription(webhook)


@router.get(
    "",
    response_model=list[WebhookResponse],
)
async def list_webhooks(
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> list[WebhookResponse]:
    """List the caller's webhooks, newest first."""
    webhooks = await service.list_webhooks(owner_id)
    return [WebhookResponse.from_subscription(w) for w in webhooks]


@router.get("/events", response_model=list[str])
async def list_supported_events(
    service: WebhookService = Depends(get_service),
) -> list[str]:
    """List the event types webhooks can subscribe to."""
    return service.get_supported_events()


@router.get("/stats", response_model=WebhookStatsSummary)
async def get_webhook_stats(
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> WebhookStatsSummary:
    """Aggregated delivery statistics over the caller's webhooks."""
    return await service.get_webhook_stats(owner_id)


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook(
    webhook_id: str,
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> WebhookResponse:
    """Get webhook details by ID."""
    webhook = await service.get_webhook(webhook_id, owner_id)
    return WebhookResponse.from_subscription(webhook)


@router.put(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Invalid request"},
        404: {"description": "Webhook not found"},
    },
)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdate,
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> WebhookResponse:
    """Update a webhook; omitted fields keep their value."""
    webhook = await service.update_webhook(webhook_id, owner_id, request)
    return WebhookResponse.from_subscription(webhook)


@router.delete(
    "/{webhook_id}",
    response_model=DeleteResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def delete_webhook(
    webhook_id: str,
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> DeleteResponse:
    """Delete a webhook together with its delivery history."""
    result = await service.delete_webhook(webhook_id, owner_id)
    return DeleteResponse(**result)


@router.get(
    "/{webhook_id}/logs",
    response_model=list[DeliveryLogResponse],
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def list_webhook_logs(
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    skip: int = Query(default=0, ge=0),
    event_type: str | None = None,
    status: DeliveryStatus | None = None,
    owner_id: str = Depends(get_owner_id),
    service: WebhookService = Depends(get_service),
) -> list[DeliveryLogResponse]:
    """List delivery logs for a webhook, newest first.

    Each entry carries every attempt with status code, timing and error.
    """
    entries = await service.get_webhook_logs(
        webhook_id,
        owner_id,
        limit=limit,
        skip=skip,
        event_type=event_type,
        status=status,
    )
    return [DeliveryLogResponse.from_entry(e) for e in entries]
