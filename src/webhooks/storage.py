"""Persistence interfaces for subscriptions and delivery logs.

This module defines the store contracts used by the manager, dispatcher
and worker, plus in-memory implementations used by default and in tests.
See ``src.webhooks.sqlite_storage`` for the durable implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

import structlog

from src.webhooks.errors import NotFoundError
from src.webhooks.models import (
    DeliveryAttempt,
    DeliveryLogEntry,
    DeliveryStatus,
    Subscription,
    WebhookStats,
)

logger = structlog.get_logger(__name__)


def apply_stats(
    stats: WebhookStats,
    *,
    success: bool,
    response_time_ms: float,
) -> WebhookStats:
    """Fold one terminal delivery outcome into subscription stats.

    The running average only covers successful deliveries:
    ``new_avg = (old_avg * old_success_count + t) / (old_success_count + 1)``.

    Args:
        stats: Current stats.
        success: Whether the delivery succeeded.
        response_time_ms: Response time of the final attempt.

    Returns:
        New stats object.
    """
    if success:
        count = stats.successful_deliveries
        average = (stats.average_response_time * count + response_time_ms) / (count + 1)
        return WebhookStats(
            total_triggers=stats.total_triggers + 1,
            successful_deliveries=count + 1,
            failed_deliveries=stats.failed_deliveries,
            average_response_time=average,
        )
    return WebhookStats(
        total_triggers=stats.total_triggers + 1,
        successful_deliveries=stats.successful_deliveries,
        failed_deliveries=stats.failed_deliveries + 1,
        average_response_time=stats.average_response_time,
    )


class SubscriptionStore(ABC):
    """Storage contract for webhook subscriptions."""

    @abstractmethod
    async def create(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription."""

    @abstractmethod
    async def get(
        self,
        subscription_id: str,
        owner_id: str | None = None,
    ) -> Subscription | None:
        """Fetch a subscription, optionally requiring a matching owner."""

    @abstractmethod
    async def save(self, subscription: Subscription) -> Subscription:
        """Replace an existing subscription.

        Raises:
            NotFoundError: If the subscription does not exist.
        """

    @abstractmethod
    async def delete(self, subscription_id: str, owner_id: str) -> bool:
        """Delete a subscription owned by ``owner_id``; False if not found."""

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        """List an owner's subscriptions, newest first."""

    @abstractmethod
    async def find_active(
        self,
        event_type: str,
        owner_id: str | None = None,
    ) -> list[Subscription]:
        """List active subscriptions for an event type, oldest first."""

    @abstractmethod
    async def list_all(self) -> list[Subscription]:
        """List every subscription."""

    @abstractmethod
    async def increment_stats(
        self,
        subscription_id: str,
        *,
        success: bool,
        response_time_ms: float,
        at: datetime,
    ) -> Subscription:
        """Atomically record a terminal delivery outcome.

        Raises:
            NotFoundError: If the subscription does not exist.
        """


class DeliveryLogStore(ABC):
    """Storage contract for delivery log entries."""

    @abstractmethod
    async def create(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        """Persist a new delivery log entry."""

    @abstractmethod
    async def get(self, entry_id: str) -> DeliveryLogEntry | None:
        """Fetch an entry by ID."""

    @abstractmethod
    async def record_attempt(
        self,
        entry_id: str,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
    ) -> DeliveryLogEntry:
        """Append an attempt and set the entry's status.

        Raises:
            NotFoundError: If the entry does not exist.
            DeliveryLogClosedError: If the entry is already terminal.
        """

    @abstractmethod
    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
        event_type: str | None = None,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryLogEntry]:
        """List a subscription's entries, newest first."""

    @abstractmethod
    async def delete_for_subscription(self, subscription_id: str) -> int:
        """Delete all entries of a subscription; returns the count."""

    @abstractmethod
    async def list_pending(self, created_before: datetime) -> list[DeliveryLogEntry]:
        """List pending entries created before a cutoff, oldest first."""


class InMemorySubscriptionStore(SubscriptionStore):
    """Process-local subscription store.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}

    async def create(self, subscription: Subscription) -> Subscription:
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def get(
        self,
        subscription_id: str,
        owner_id: str | None = None,
    ) -> Subscription | None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return None
        if owner_id is not None and subscription.owner_id != owner_id:
            return None
        return subscription.model_copy(deep=True)

    async def save(self, subscription: Subscription) -> Subscription:
        current = self._subscriptions.get(subscription.id)
        if current is None:
            raise NotFoundError(details={"webhook_id": subscription.id})
        # Stats are owned by increment_stats
        stored = subscription.model_copy(
            update={"stats": current.stats, "last_triggered": current.last_triggered},
            deep=True,
        )
        self._subscriptions[subscription.id] = stored
        return stored.model_copy(deep=True)

    async def delete(self, subscription_id: str, owner_id: str) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None or subscription.owner_id != owner_id:
            return False
        del self._subscriptions[subscription_id]
        return True

    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        # Reverse insertion order so ties on created_at still list newest first
        owned = [s for s in reversed(self._subscriptions.values()) if s.owner_id == owner_id]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return [s.model_copy(deep=True) for s in owned]

    async def find_active(
        self,
        event_type: str,
        owner_id: str | None = None,
    ) -> list[Subscription]:
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.active
            and s.subscribes_to(event_type)
            and (owner_id is None or s.owner_id == owner_id)
        ]

    async def list_all(self) -> list[Subscription]:
        return [s.model_copy(deep=True) for s in self._subscriptions.values()]

    async def increment_stats(
        self,
        subscription_id: str,
        *,
        success: bool,
        response_time_ms: float,
        at: datetime,
    ) -> Subscription:
        # Read-modify-write without an await in between: atomic on the event loop
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError(details={"webhook_id": subscription_id})
        updated = subscription.model_copy(
            update={
                "stats": apply_stats(
                    subscription.stats,
                    success=success,
                    response_time_ms=response_time_ms,
                ),
                "last_triggered": at,
            }
        )
        self._subscriptions[subscription_id] = updated
        return updated.model_copy(deep=True)


class InMemoryDeliveryLogStore(DeliveryLogStore):
    """Process-local delivery log store."""

    def __init__(self) -> None:
        self._entries: dict[str, DeliveryLogEntry] = {}

    async def create(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        self._entries[entry.id] = entry.model_copy(deep=True)
        return entry.model_copy(deep=True)

    async def get(self, entry_id: str) -> DeliveryLogEntry | None:
        entry = self._entries.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def record_attempt(
        self,
        entry_id: str,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
    ) -> DeliveryLogEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise NotFoundError(
                "Delivery log entry not found",
                details={"log_entry_id": entry_id},
            )
        updated = entry.with_attempt(attempt, final_status)
        self._entries[entry_id] = updated
        return updated.model_copy(deep=True)

    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
        event_type: str | None = None,
        status: DeliveryStatus | None = None,
    ) -> list[DeliveryLogEntry]:
        entries = [
            e for e in reversed(self._entries.values())
            if e.subscription_id == subscription_id
        ]
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if status:
            entries = [e for e in entries if e.final_status == status]

        entries.sort(key=lambda e: e.created_at, reverse=True)
        skip = max(skip, 0)
        return [e.model_copy(deep=True) for e in entries[skip:skip + max(limit, 0)]]

    async def delete_for_subscription(self, subscription_id: str) -> int:
        doomed = [k for k, e in self._entries.items() if e.subscription_id == subscription_id]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    async def list_pending(self, created_before: datetime) -> list[DeliveryLogEntry]:
        pending = [
            e for e in self._entries.values()
            if e.final_status == DeliveryStatus.PENDING and e.created_at < created_before
        ]
        pending.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in pending]
