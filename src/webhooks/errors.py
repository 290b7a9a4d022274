"""Error hierarchy for webhook registration and delivery.

Exception Hierarchy:
    WebhookError (base)
    ├── ValidationError - Bad URL, headers or retry policy
    │   └── UnsupportedEventError - Event names outside the vocabulary
    ├── NotFoundError - Unknown webhook or owner mismatch
    ├── DeliveryError - Network, timeout or non-2xx outcome of a delivery
    ├── DeliveryLogClosedError - Attempt appended to a finished delivery log
    └── QueueFullError - Delivery queue is at capacity
"""

from typing import Any


class WebhookError(Exception):
    """Base exception for all webhook errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(WebhookError):
    """Registration or update input was rejected.

    Surfaced synchronously to the caller and never retried.
    """


class UnsupportedEventError(ValidationError):
    """One or more event names are not in the supported vocabulary.

    Attributes:
        events: Every unrecognized event name, in input order.
    """

    def __init__(self, events: list[str]) -> None:
        super().__init__(
            f"Unsupported events: {', '.join(events)}",
            details={"unsupported_events": list(events)},
        )
        self.events = list(events)


class NotFoundError(WebhookError):
    """Webhook does not exist or belongs to another owner."""

    def __init__(
        self,
        message: str = "Webhook not found",
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)


class DeliveryError(WebhookError):
    """A delivery attempt failed.

    Only recorded in the delivery log; never raised to event producers.

    Attributes:
        status_code: HTTP status code, 0 when no response was received.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["status_code"] = self.status_code
        return base


class DeliveryLogClosedError(WebhookError):
    """A delivery log entry already reached a terminal status."""


class QueueFullError(WebhookError):
    """The delivery queue cannot accept more tasks."""
