"""Webhook subscription and delivery log models.

Provides the records persisted by the stores, the request models used to
register and update subscriptions, and the task passed through the
delivery queue.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.webhooks.errors import DeliveryLogClosedError
from src.webhooks.events import WebhookEventType, normalize_event_type


def _now() -> datetime:
    return datetime.now(UTC)


class DeliveryStatus(str, Enum):
    """Final status of a delivery log entry."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RetryPolicy(BaseModel):
    """Retry configuration for a webhook subscription."""

    max_retries: int = Field(
        default=3,
        description="Retries after the first attempt",
        ge=0,
    )
    backoff_multiplier: float = Field(
        default=2.0,
        description="Factor applied to the delay after each failed attempt",
        gt=1,
    )
    initial_delay_ms: int = Field(
        default=1000,
        description="Delay before the first retry in milliseconds",
        gt=0,
    )

    def delay_ms(self, attempt: int) -> float:
        """Backoff delay after a failed attempt.

        Args:
            attempt: 0-indexed number of the attempt that failed.

        Returns:
            ``initial_delay_ms * backoff_multiplier ** attempt``.
        """
        return self.initial_delay_ms * self.backoff_multiplier**attempt

    def delay_seconds(self, attempt: int) -> float:
        """Backoff delay in seconds, see ``delay_ms``."""
        return self.delay_ms(attempt) / 1000.0


class RetryPolicyPatch(BaseModel):
    """Partial retry policy, merged over defaults or the current policy."""

    max_retries: int | None = None
    backoff_multiplier: float | None = None
    initial_delay_ms: int | None = None


class WebhookStats(BaseModel):
    """Delivery statistics for a subscription.

    Only terminal outcomes are counted, so
    ``successful_deliveries + failed_deliveries <= total_triggers``.
    """

    total_triggers: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    average_response_time: float = Field(
        default=0.0,
        description="Mean response time of successful deliveries in milliseconds",
    )


class Subscription(BaseModel):
    """A registered webhook subscription."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}",
        description="Unique webhook identifier",
    )
    owner_id: str = Field(..., description="Owning principal")
    url: str = Field(..., description="Webhook endpoint URL")
    events: list[str] = Field(..., description="Subscribed event types")
    secret: str | None = Field(
        default=None,
        description="Secret key for HMAC signature",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Custom headers to include in requests",
    )
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    metadata: dict[str, Any] = Field(default_factory=dict)
    active: bool = Field(default=True, description="Whether webhook is active")
    stats: WebhookStats = Field(default_factory=WebhookStats)
    last_triggered: datetime | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def subscribes_to(self, event_type: WebhookEventType | str) -> bool:
        """Check if this webhook should receive an event type."""
        return normalize_event_type(event_type) in self.events


class DeliveryAttempt(BaseModel):
    """One HTTP attempt recorded in a delivery log."""

    timestamp: datetime = Field(default_factory=_now)
    status_code: int = Field(
        default=0,
        description="HTTP status code, 0 when no response was received",
    )
    response_time_ms: float = 0.0
    error: str | None = None
    success: bool


class DeliveryLogEntry(BaseModel):
    """Delivery lifecycle of one triggered event for one subscription."""

    id: str = Field(default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}")
    subscription_id: str
    event_type: str
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Snapshot of the payload at trigger time",
    )
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    final_status: DeliveryStatus = DeliveryStatus.PENDING
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        """True once the entry reached success or failed."""
        return self.final_status != DeliveryStatus.PENDING

    def with_attempt(
        self,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
    ) -> DeliveryLogEntry:
        """Return a copy with one more attempt appended.

        Args:
            attempt: Attempt to append.
            final_status: Status after this attempt.

        Returns:
            Updated copy of the entry.

        Raises:
            DeliveryLogClosedError: If the entry is already terminal.
        """
        if self.is_terminal:
            raise DeliveryLogClosedError(
                f"Delivery log {self.id} is already {self.final_status.value}",
                details={"log_entry_id": self.id},
            )
        return self.model_copy(
            update={
                "attempts": [*self.attempts, attempt],
                "final_status": final_status,
                "updated_at": attempt.timestamp,
            },
            deep=True,
        )


class DeliveryTask(BaseModel):
    """Unit of work on the delivery queue."""

    subscription: Subscription
    log_entry_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(default=0, description="0-indexed attempt number", ge=0)

    def next_attempt(self, subscription: Subscription | None = None) -> DeliveryTask:
        """Task for the following attempt, optionally with a refreshed subscription."""
        update: dict[str, Any] = {"attempt": self.attempt + 1}
        if subscription is not None:
            update["subscription"] = subscription
        return self.model_copy(update=update)


class WebhookRegistration(BaseModel):
    """Data supplied when registering a webhook."""

    url: str = Field(..., description="Webhook endpoint URL (http or https)")
    events: list[str] = Field(..., description="Event types to subscribe to")
    secret: str | None = Field(
        default=None,
        description="Signing secret (generated when omitted)",
    )
    headers: dict[str, str] | None = Field(
        default=None,
        description="Custom headers to include in requests",
    )
    retry_policy: RetryPolicyPatch | None = Field(
        default=None,
        description="Retry policy overrides",
    )
    metadata: dict[str, Any] | None = None


class WebhookUpdate(BaseModel):
    """Partial update of a webhook; omitted fields keep their value."""

    url: str | None = None
    events: list[str] | None = None
    active: bool | None = None
    secret: str | None = None
    headers: dict[str, str] | None = None
    retry_policy: RetryPolicyPatch | None = None
    metadata: dict[str, Any] | None = None


class WebhookStatsSummary(BaseModel):
    """Aggregated statistics over all webhooks of an owner."""

    total_webhooks: int = 0
    active_webhooks: int = 0
    total_triggers: int = 0
    total_deliveries: int = 0
    total_failures: int = 0
    average_response_time: float = 0.0
    success_rate: float = Field(
        default=0.0,
        description="Successful deliveries as a percentage of triggers",
    )
