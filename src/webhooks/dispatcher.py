"""Webhook event dispatcher.

Fans a triggered event out to every matching active subscription: one
delivery log entry and one queued delivery task per subscription.
"""

import copy
from collections.abc import Callable
from typing import Any

import structlog

from src.webhooks.clock import Clock, SystemClock
from src.webhooks.errors import QueueFullError
from src.webhooks.events import WebhookEventType, normalize_event_type
from src.webhooks.manager import WebhookManager
from src.webhooks.models import DeliveryLogEntry, DeliveryTask
from src.webhooks.scheduler import DeliveryQueue
from src.webhooks.storage import DeliveryLogStore

logger = structlog.get_logger(__name__)


class EventDispatcher:
    """Dispatches events to subscribed webhooks.

    ``trigger_event`` never raises into the producer: lookup, persistence
    and enqueue failures are logged and the affected subscription skipped.
    """

    def __init__(
        self,
        manager: WebhookManager,
        logs: DeliveryLogStore,
        queue: DeliveryQueue,
        *,
        clock: Clock | None = None,
        on_enqueued: Callable[[], None] | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            manager: Source of matching subscriptions.
            logs: Store for new delivery log entries.
            queue: Queue receiving delivery tasks.
            clock: Time source (system clock if not provided).
            on_enqueued: Called once after tasks were queued.
        """
        self._manager = manager
        self._logs = logs
        self._queue = queue
        self._clock = clock or SystemClock()
        self._on_enqueued = on_enqueued
        self._logger = logger.bind(component="event_dispatcher")

    async def trigger_event(
        self,
        event_type: WebhookEventType | str,
        payload: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> list[DeliveryLogEntry]:
        """Dispatch an event to all subscribed webhooks.

        Args:
            event_type: Type of event.
            payload: Event data; snapshotted per delivery.
            owner_id: Restrict delivery to one owner's webhooks.

        Returns:
            Delivery log entries created (informational).
        """
        name = normalize_event_type(event_type)

        try:
            subscriptions = await self._manager.find_active_by_event(name, owner_id)
        except Exception as e:
            self._logger.error(
                "webhook_lookup_failed",
                event_type=name,
                owner_id=owner_id,
                error=str(e),
            )
            return []

        if not subscriptions:
            self._logger.debug(
                "no_webhooks_subscribed",
                event_type=name,
                owner_id=owner_id,
            )
            return []

        entries: list[DeliveryLogEntry] = []
        queued = 0
        for subscription in subscriptions:
            now = self._clock.now()
            try:
                entry = DeliveryLogEntry(
                    subscription_id=subscription.id,
                    event_type=name,
                    payload=copy.deepcopy(payload or {}),
                    created_at=now,
                    updated_at=now,
                )
                entry = await self._logs.create(entry)
            except Exception as e:
                self._logger.error(
                    "delivery_log_create_failed",
                    webhook_id=subscription.id,
                    event_type=name,
                    error=str(e),
                )
                continue
            entries.append(entry)

            task = DeliveryTask(
                subscription=subscription,
                log_entry_id=entry.id,
                event_type=name,
                payload=copy.deepcopy(entry.payload),
            )
            try:
                self._queue.push(task)
            except QueueFullError as e:
                # Entry stays pending for the recovery sweep
                self._logger.warning(
                    "delivery_enqueue_failed",
                    webhook_id=subscription.id,
                    log_entry_id=entry.id,
                    error=e.message,
                )
                continue
            queued += 1

        if queued and self._on_enqueued is not None:
            self._on_enqueued()

        self._logger.info(
            "event_dispatched",
            event_type=name,
            owner_id=owner_id,
            webhook_count=len(subscriptions),
            delivery_count=queued,
        )

        return entries
