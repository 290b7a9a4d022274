"""Webhook event types and the delivery envelope.

This module defines the closed vocabulary of events subscribers can
register for, and the JSON envelope POSTed to subscriber endpoints.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Events are organized by category:
    - translation.*: Translation lifecycle events
    - user.*: Account events
    - session.*, room.*: Session and room presence events
    - speech.*, learning.*, communication.*: Feature activity events
    - error.*, performance.*: Operational events
    - webhook.*: Events about the webhook itself
    """

    # Translation events
    TRANSLATION_COMPLETED = "translation.completed"
    TRANSLATION_FAILED = "translation.failed"

    # User events
    USER_REGISTERED = "user.registered"
    USER_LOGIN = "user.login"

    # Session events
    SESSION_STARTED = "session.started"
    SESSION_ENDED = "session.ended"

    # Operational events
    ERROR_OCCURRED = "error.occurred"
    PERFORMANCE_THRESHOLD_EXCEEDED = "performance.threshold.exceeded"

    # Feature activity events
    SPEECH_TRANSCRIBED = "speech.transcribed"
    LEARNING_PROGRESS_UPDATED = "learning.progress.updated"
    COMMUNICATION_MESSAGE_RECEIVED = "communication.message.received"

    # Room events
    ROOM_JOINED = "room.joined"
    ROOM_LEFT = "room.left"

    # Webhook lifecycle events
    WEBHOOK_REGISTERED = "webhook.registered"


SUPPORTED_EVENTS: frozenset[str] = frozenset(e.value for e in WebhookEventType)


def normalize_event_type(event_type: "WebhookEventType | str") -> str:
    """Return the plain string name of an event type.

    Args:
        event_type: Enum member or raw event name.

    Returns:
        Event name such as "translation.completed".
    """
    if isinstance(event_type, WebhookEventType):
        return event_type.value
    return str(event_type)


def supported_event_names() -> list[str]:
    """List supported event names in declaration order."""
    return [e.value for e in WebhookEventType]


class WebhookReference(BaseModel):
    """Identifies the subscription and attempt inside an envelope."""

    id: str = Field(..., description="Webhook subscription ID")
    attempt: int = Field(..., description="1-based delivery attempt number", ge=1)


class WebhookEnvelope(BaseModel):
    """Standard body of every webhook delivery.

    All deliveries use this format so subscribers can route on ``event``
    and de-duplicate retries using ``webhook.attempt``.
    """

    event: str = Field(..., description="Event type")
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific payload",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When this attempt was sent",
    )
    webhook: WebhookReference

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary.

        Returns:
            Dictionary with ISO-formatted timestamp.
        """
        return {
            "event": self.event,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "webhook": {
                "id": self.webhook.id,
                "attempt": self.webhook.attempt,
            },
        }

    def to_bytes(self) -> bytes:
        """Serialize to the exact compact JSON bytes that get signed and sent."""
        return json.dumps(
            self.to_json_dict(),
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")


def build_envelope(
    event_type: "WebhookEventType | str",
    data: dict[str, Any],
    *,
    webhook_id: str,
    attempt: int,
    timestamp: datetime | None = None,
) -> WebhookEnvelope:
    """Build the envelope for one delivery attempt.

    Args:
        event_type: Type of event.
        data: Event payload.
        webhook_id: Target subscription ID.
        attempt: 0-indexed attempt counter; the envelope carries ``attempt + 1``.
        timestamp: Send time (defaults to now).

    Returns:
        Envelope ready for serialization.
    """
    envelope = WebhookEnvelope(
        event=normalize_event_type(event_type),
        data=data,
        webhook=WebhookReference(id=webhook_id, attempt=attempt + 1),
    )
    if timestamp is not None:
        envelope.timestamp = timestamp
    return envelope
