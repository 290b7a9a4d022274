"""Webhook service: the wired delivery pipeline.

``WebhookService`` owns the stores, HTTP client, queue, scheduler, retry
timers, worker and dispatcher, and exposes the registration and trigger
operations used by the API, the CLI and in-process event producers.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import httpx
import structlog

from src.config import Settings
from src.config import settings as default_settings
from src.webhooks.clock import Clock, SystemClock
from src.webhooks.dispatcher import EventDispatcher
from src.webhooks.errors import QueueFullError
from src.webhooks.events import WebhookEventType, supported_event_names
from src.webhooks.manager import WebhookManager
from src.webhooks.models import (
    DeliveryLogEntry,
    DeliveryStatus,
    DeliveryTask,
    Subscription,
    WebhookRegistration,
    WebhookStatsSummary,
    WebhookUpdate,
)
from src.webhooks.scheduler import DeliveryQueue, DeliveryScheduler, RetryTimers
from src.webhooks.sqlite_storage import SQLiteWebhookStorage
from src.webhooks.storage import (
    DeliveryLogStore,
    InMemoryDeliveryLogStore,
    InMemorySubscriptionStore,
    SubscriptionStore,
)
from src.webhooks.worker import DeliveryWorker

logger = structlog.get_logger(__name__)


class WebhookService:
    """Webhook registration, dispatch and delivery.

    All collaborators are injected; anything omitted gets an in-process
    default. The service owns the HTTP client only when it created it.

    Example:
        async with WebhookService() as service:
            webhook = await service.register_webhook("user_1", {
                "url": "https://example.com/hooks",
                "events": ["translation.completed"],
            })
            await service.trigger_event("translation.completed", {"id": 1})
    """

    def __init__(
        self,
        *,
        subscriptions: SubscriptionStore | None = None,
        logs: DeliveryLogStore | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            subscriptions: Subscription store (in-memory if not provided).
            logs: Delivery log store (in-memory if not provided).
            client: HTTP client for deliveries (created if not provided).
            clock: Time source (system clock if not provided).
            settings: Settings (global settings if not provided).
        """
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.subscriptions = subscriptions or InMemorySubscriptionStore()
        self.logs = logs or InMemoryDeliveryLogStore()

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.settings.WEBHOOK_REQUEST_TIMEOUT,
        )

        self.queue = DeliveryQueue(maxlen=self.settings.WEBHOOK_QUEUE_MAX_SIZE)
        self.manager = WebhookManager(
            self.subscriptions,
            self.logs,
            clock=self.clock,
            settings=self.settings,
        )
        self.retry_timers = RetryTimers(self.clock, self._requeue_retry)
        self.worker = DeliveryWorker(
            self.client,
            self.subscriptions,
            self.logs,
            schedule_retry=self.retry_timers.schedule,
            clock=self.clock,
            settings=self.settings,
        )
        self.scheduler = DeliveryScheduler(
            self.queue,
            self.worker.deliver,
            batch_size=self.settings.WEBHOOK_BATCH_SIZE,
            tick_interval=self.settings.WEBHOOK_TICK_INTERVAL,
        )
        self.dispatcher = EventDispatcher(
            self.manager,
            self.logs,
            self.queue,
            clock=self.clock,
            on_enqueued=self.scheduler.wake,
        )
        self._logger = logger.bind(component="webhook_service")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Recover stranded deliveries (if enabled) and start the consumer."""
        if self.settings.WEBHOOK_RECOVER_ON_START:
            await self.recover_pending()
        self.scheduler.start()
        self._logger.info("webhook_service_started")

    async def stop(self, *, drain: bool = False) -> None:
        """Stop delivering.

        Args:
            drain: Deliver everything still queued before returning. Retries
                that would be scheduled while draining are dropped and their
                entries stay pending for the next recovery sweep.
        """
        await self.scheduler.stop()
        await self.retry_timers.shutdown()
        if drain:
            drained = await self.scheduler.drain()
            self._logger.info("queue_drained", processed=drained)
        if self._owns_client:
            await self.client.aclose()
        self._logger.info("webhook_service_stopped", queued=len(self.queue))

    async def __aenter__(self) -> WebhookService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    @property
    def queue_depth(self) -> int:
        return len(self.queue)

    @property
    def pending_retries(self) -> int:
        return len(self.retry_timers)

    # =========================================================================
    # Registration API
    # =========================================================================

    async def register_webhook(
        self,
        owner_id: str,
        registration: WebhookRegistration | dict[str, Any],
    ) -> Subscription:
        """Register a webhook and announce it with a ``webhook.registered`` event."""
        subscription = await self.manager.register(owner_id, registration)

        await self.trigger_event(
            WebhookEventType.WEBHOOK_REGISTERED,
            {
                "webhook_id": subscription.id,
                "message": "Webhook registered successfully",
                "timestamp": self.clock.now().isoformat(),
            },
            owner_id=owner_id,
        )

        return subscription

    async def update_webhook(
        self,
        webhook_id: str,
        owner_id: str,
        patch: WebhookUpdate | dict[str, Any],
    ) -> Subscription:
        return await self.manager.update(webhook_id, owner_id, patch)

    async def delete_webhook(self, webhook_id: str, owner_id: str) -> dict[str, bool]:
        """Delete a webhook, its delivery logs and its scheduled retries."""
        await self.manager.delete(webhook_id, owner_id)
        self.retry_timers.cancel_for_subscription(webhook_id)
        return {"success": True}

    async def get_webhook(self, webhook_id: str, owner_id: str) -> Subscription:
        return await self.manager.get(webhook_id, owner_id)

    async def list_webhooks(self, owner_id: str) -> list[Subscription]:
        return await self.manager.list_by_owner(owner_id)

    async def get_webhook_logs(
        self,
        webhook_id: str,
        owner_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
        event_type: str | None = None,
        status: DeliveryStatus | str | None = None,
    ) -> list[DeliveryLogEntry]:
        return await self.manager.get_logs(
            webhook_id,
            owner_id,
            limit=limit,
            skip=skip,
            event_type=event_type,
            status=status,
        )

    async def get_webhook_stats(self, owner_id: str) -> WebhookStatsSummary:
        return await self.manager.get_stats(owner_id)

    def get_supported_events(self) -> list[str]:
        return supported_event_names()

    # =========================================================================
    # Trigger API
    # =========================================================================

    async def trigger_event(
        self,
        event_type: WebhookEventType | str,
        payload: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> list[DeliveryLogEntry]:
        """Fire-and-forget event trigger; never raises."""
        return await self.dispatcher.trigger_event(event_type, payload, owner_id)

    # =========================================================================
    # Retries and recovery
    # =========================================================================

    async def _requeue_retry(self, task: DeliveryTask) -> None:
        """Put a retry back on the queue with a freshly loaded subscription."""
        subscription = await self.subscriptions.get(task.subscription.id)
        if subscription is None:
            self._logger.info(
                "retry_dropped",
                log_entry_id=task.log_entry_id,
                webhook_id=task.subscription.id,
                reason="webhook deleted",
            )
            return

        try:
            self.queue.push(task.model_copy(update={"subscription": subscription}))
        except QueueFullError as e:
            self._logger.warning(
                "retry_enqueue_failed",
                log_entry_id=task.log_entry_id,
                webhook_id=subscription.id,
                error=e.message,
            )
            return

        self.scheduler.wake()

    async def recover_pending(self, min_age_seconds: float | None = None) -> int:
        """Re-enqueue deliveries left pending by an earlier process.

        An entry is recovered once it has been overdue for ``min_age_seconds``.
        An entry that was never attempted is due when it was created. An entry
        with failed attempts is due when its backoff delay (plus the request
        timeout) has elapsed after the last attempt, so a retry another
        process still holds a timer for is not delivered twice.

        Entries already queued, in flight or waiting on a retry timer, and
        entries whose webhook is gone or inactive are skipped.

        Args:
            min_age_seconds: Grace period after an entry becomes due
                (defaults to ``WEBHOOK_RECOVERY_MIN_AGE``).

        Returns:
            Number of deliveries re-enqueued.
        """
        if min_age_seconds is None:
            min_age_seconds = self.settings.WEBHOOK_RECOVERY_MIN_AGE
        cutoff = self.clock.now() - timedelta(seconds=min_age_seconds)

        entries = await self.logs.list_pending(cutoff)
        if not entries:
            self._logger.info("pending_deliveries_recovered", recovered=0, scanned=0)
            return 0

        subscriptions = {s.id: s for s in await self.subscriptions.list_all()}
        queued_ids = {t.log_entry_id for t in self.queue}

        recovered = 0
        for entry in entries:
            if (
                entry.id in queued_ids
                or self.scheduler.is_in_flight(entry.id)
                or self.retry_timers.is_scheduled(entry.id)
            ):
                continue

            subscription = subscriptions.get(entry.subscription_id)
            if subscription is None or not subscription.active:
                self._logger.debug(
                    "recovery_skipped",
                    log_entry_id=entry.id,
                    webhook_id=entry.subscription_id,
                    reason="webhook deleted or inactive",
                )
                continue

            if self._due_at(entry, subscription) > cutoff:
                self._logger.debug(
                    "recovery_skipped",
                    log_entry_id=entry.id,
                    webhook_id=entry.subscription_id,
                    reason="retry not yet due",
                )
                continue

            task = DeliveryTask(
                subscription=subscription,
                log_entry_id=entry.id,
                event_type=entry.event_type,
                payload=entry.payload,
                attempt=len(entry.attempts),
            )
            try:
                self.queue.push(task)
            except QueueFullError as e:
                self._logger.warning("recovery_stopped", reason=e.message)
                break
            recovered += 1

        if recovered:
            self.scheduler.wake()

        self._logger.info(
            "pending_deliveries_recovered",
            recovered=recovered,
            scanned=len(entries),
        )

        return recovered

    def _due_at(self, entry: DeliveryLogEntry, subscription: Subscription) -> datetime:
        """When the next attempt of a pending entry should have started."""
        if not entry.attempts:
            return entry.created_at
        delay = subscription.retry_policy.delay_seconds(len(entry.attempts) - 1)
        return entry.updated_at + timedelta(
            seconds=delay + self.settings.WEBHOOK_REQUEST_TIMEOUT
        )


def create_webhook_service(settings: Settings | None = None) -> WebhookService:
    """Build a service from settings.

    Uses SQLite stores when ``WEBHOOK_DB_PATH`` is set and in-memory stores
    otherwise.

    Args:
        settings: Settings (global settings if not provided).

    Returns:
        Configured, not yet started service.
    """
    settings = settings or default_settings

    if settings.WEBHOOK_DB_PATH:
        storage = SQLiteWebhookStorage(settings.WEBHOOK_DB_PATH)
        return WebhookService(
            subscriptions=storage.subscriptions,
            logs=storage.logs,
            settings=settings,
        )

    return WebhookService(settings=settings)
