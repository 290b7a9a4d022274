"""Webhook delivery system for external integrations.

This module provides:
- WebhookEventType: Enumeration of all webhook event types
- WebhookEnvelope: Standard body of every webhook delivery
- WebhookManager: Validated registration and management of webhooks
- EventDispatcher: Fan-out of triggered events to subscribed webhooks
- DeliveryScheduler / RetryTimers: Batched delivery with exponential backoff
- WebhookService: The wired pipeline used by the API and CLI
- HMAC signature generation and verification
"""

from src.webhooks.dispatcher import EventDispatcher
from src.webhooks.errors import (
    DeliveryError,
    DeliveryLogClosedError,
    NotFoundError,
    QueueFullError,
    UnsupportedEventError,
    ValidationError,
    WebhookError,
)
from src.webhooks.events import (
    SUPPORTED_EVENTS,
    WebhookEnvelope,
    WebhookEventType,
    build_envelope,
    supported_event_names,
)
from src.webhooks.manager import WebhookManager
from src.webhooks.models import (
    DeliveryAttempt,
    DeliveryLogEntry,
    DeliveryStatus,
    DeliveryTask,
    RetryPolicy,
    Subscription,
    WebhookRegistration,
    WebhookStats,
    WebhookStatsSummary,
    WebhookUpdate,
)
from src.webhooks.scheduler import DeliveryQueue, DeliveryScheduler, RetryTimers
from src.webhooks.security import (
    generate_secret,
    generate_signature,
    validate_url,
    verify_from_headers,
    verify_signature,
)
from src.webhooks.service import WebhookService, create_webhook_service
from src.webhooks.sqlite_storage import SQLiteWebhookStorage
from src.webhooks.storage import InMemoryDeliveryLogStore, InMemorySubscriptionStore
from src.webhooks.worker import DeliveryOutcome, DeliveryWorker

__all__ = [
    # Events
    "SUPPORTED_EVENTS",
    "WebhookEnvelope",
    "WebhookEventType",
    "build_envelope",
    "supported_event_names",
    # Errors
    "DeliveryError",
    "DeliveryLogClosedError",
    "NotFoundError",
    "QueueFullError",
    "UnsupportedEventError",
    "ValidationError",
    "WebhookError",
    # Models
    "DeliveryAttempt",
    "DeliveryLogEntry",
    "DeliveryStatus",
    "DeliveryTask",
    "RetryPolicy",
    "Subscription",
    "WebhookRegistration",
    "WebhookStats",
    "WebhookStatsSummary",
    "WebhookUpdate",
    # Storage
    "InMemoryDeliveryLogStore",
    "InMemorySubscriptionStore",
    "SQLiteWebhookStorage",
    # Pipeline
    "DeliveryOutcome",
    "DeliveryQueue",
    "DeliveryScheduler",
    "DeliveryWorker",
    "EventDispatcher",
    "RetryTimers",
    "WebhookManager",
    "WebhookService",
    "create_webhook_service",
    # Security
    "generate_secret",
    "generate_signature",
    "validate_url",
    "verify_from_headers",
    "verify_signature",
]
