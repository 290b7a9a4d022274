"""FastAPI routes for the Webhook Relay API.

This module contains:
- Webhook registration and delivery log endpoints
- Event trigger and health endpoints
- Request/response models
"""

from src.api.routes import (
    ErrorResponse,
    TriggerEventRequest,
    TriggerEventResponse,
    app,
    create_app,
)
from src.api.webhooks import (
    DeleteResponse,
    DeliveryAttemptResponse,
    DeliveryLogResponse,
    WebhookResponse,
    router,
)

__all__ = [
    # Request models
    "TriggerEventRequest",
    # Response models
    "DeleteResponse",
    "DeliveryAttemptResponse",
    "DeliveryLogResponse",
    "ErrorResponse",
    "TriggerEventResponse",
    "WebhookResponse",
    # App factory, router and instance
    "app",
    "create_app",
    "router",
]
