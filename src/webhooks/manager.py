"""Webhook registration and management.

Provides validated CRUD operations over the subscription store, delivery
log queries and per-owner statistics.
"""

from __future__ import annotations

from typing import Any

import pydantic
import structlog

from src.config import Settings
from src.config import settings as default_settings
from src.webhooks.clock import Clock, SystemClock
from src.webhooks.errors import NotFoundError, ValidationError
from src.webhooks.events import WebhookEventType, normalize_event_type
from src.webhooks.models import (
    DeliveryLogEntry,
    DeliveryStatus,
    RetryPolicy,
    RetryPolicyPatch,
    Subscription,
    WebhookRegistration,
    WebhookStatsSummary,
    WebhookUpdate,
)
from src.webhooks.security import (
    generate_secret,
    is_private_target,
    validate_events,
    validate_headers,
    validate_url,
)
from src.webhooks.storage import DeliveryLogStore, SubscriptionStore

logger = structlog.get_logger(__name__)


def _coerce(model: type[pydantic.BaseModel], data: Any) -> Any:
    """Parse request data into a model, raising our ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__} data",
            details={"errors": e.errors(include_url=False)},
        ) from e


def merge_retry_policy(base: RetryPolicy, patch: RetryPolicyPatch | None) -> RetryPolicy:
    """Merge a partial retry policy over a base policy.

    Args:
        base: Defaults or the subscription's current policy.
        patch: Fields to override (None leaves the base untouched).

    Returns:
        Validated retry policy.

    Raises:
        ValidationError: If the merged policy violates its bounds.
    """
    if patch is None:
        return base
    merged = {
        **base.model_dump(),
        **patch.model_dump(exclude_none=True),
    }
    try:
        return RetryPolicy.model_validate(merged)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Invalid retry policy",
            details={"errors": e.errors(include_url=False)},
        ) from e


class WebhookManager:
    """Manages webhook registrations and their delivery history.

    Every method that takes an ``owner_id`` treats a subscription owned by
    someone else exactly like a missing one.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        logs: DeliveryLogStore,
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the webhook manager.

        Args:
            subscriptions: Subscription store.
            logs: Delivery log store.
            clock: Time source (system clock if not provided).
            settings: Settings (global settings if not provided).
        """
        self._subscriptions = subscriptions
        self._logs = logs
        self._clock = clock or SystemClock()
        self._settings = settings or default_settings
        self._logger = logger.bind(component="webhook_manager")

    @property
    def default_retry_policy(self) -> RetryPolicy:
        """Retry policy applied to new webhooks before overrides."""
        return RetryPolicy(
            max_retries=self._settings.WEBHOOK_DEFAULT_MAX_RETRIES,
            backoff_multiplier=self._settings.WEBHOOK_DEFAULT_BACKOFF_MULTIPLIER,
            initial_delay_ms=self._settings.WEBHOOK_DEFAULT_INITIAL_DELAY_MS,
        )

    def _check_url(self, url: str) -> None:
        if not validate_url(url):
            raise ValidationError(
                "Invalid webhook URL: must be an http or https URL",
                details={"url": url},
            )
        if self._settings.WEBHOOK_BLOCK_PRIVATE_TARGETS and is_private_target(url):
            raise ValidationError(
                "Webhook URL points at a private network address",
                details={"url": url},
            )

    async def register(
        self,
        owner_id: str,
        registration: WebhookRegistration | dict[str, Any],
    ) -> Subscription:
        """Register a new webhook.

        Args:
            owner_id: Owning principal.
            registration: Registration data.

        Returns:
            Created subscription, including its secret.

        Raises:
            ValidationError: On a bad URL, events, headers or retry policy.
        """
        registration = _coerce(WebhookRegistration, registration)

        self._check_url(registration.url)
        events = validate_events(registration.events)
        headers = validate_headers(registration.headers)
        retry_policy = merge_retry_policy(
            self.default_retry_policy,
            registration.retry_policy,
        )

        now = self._clock.now()
        subscription = Subscription(
            owner_id=owner_id,
            url=registration.url,
            events=events,
            secret=registration.secret or generate_secret(self._settings.WEBHOOK_SECRET_BYTES),
            headers=headers,
            retry_policy=retry_policy,
            metadata=registration.metadata or {},
            created_at=now,
            updated_at=now,
        )
        subscription = await self._subscriptions.create(subscription)

        self._logger.info(
            "webhook_registered",
            webhook_id=subscription.id,
            owner_id=owner_id,
            url=subscription.url,
            events=events,
        )

        return subscription

    async def get(self, webhook_id: str, owner_id: str) -> Subscription:
        """Get a webhook owned by ``owner_id``.

        Raises:
            NotFoundError: If missing or owned by someone else.
        """
        subscription = await self._subscriptions.get(webhook_id, owner_id)
        if subscription is None:
            raise NotFoundError(details={"webhook_id": webhook_id})
        return subscription

    async def update(
        self,
        webhook_id: str,
        owner_id: str,
        patch: WebhookUpdate | dict[str, Any],
    ) -> Subscription:
        """Apply a partial update to a webhook.

        Args:
            webhook_id: Webhook identifier.
            owner_id: Owning principal.
            patch: Fields to change; omitted fields keep their value.

        Returns:
            Updated subscription.

        Raises:
            NotFoundError: If missing or owned by someone else.
            ValidationError: If a changed field is invalid.
        """
        patch = _coerce(WebhookUpdate, patch)
        subscription = await self.get(webhook_id, owner_id)

        changes: dict[str, Any] = {}
        if patch.url is not None:
            self._check_url(patch.url)
            changes["url"] = patch.url
        if patch.events is not None:
            changes["events"] = validate_events(patch.events)
        if patch.headers is not None:
            changes["headers"] = validate_headers(patch.headers)
        if patch.retry_policy is not None:
            changes["retry_policy"] = merge_retry_policy(
                subscription.retry_policy,
                patch.retry_policy,
            )
        if patch.active is not None:
            changes["active"] = patch.active
        if patch.secret is not None:
            # An empty secret rotates to a freshly generated one
            changes["secret"] = patch.secret or generate_secret(
                self._settings.WEBHOOK_SECRET_BYTES
            )
        if patch.metadata is not None:
            changes["metadata"] = patch.metadata

        changes["updated_at"] = self._clock.now()
        updated = subscription.model_copy(update=changes, deep=True)
        updated = await self._subscriptions.save(updated)

        self._logger.info(
            "webhook_updated",
            webhook_id=webhook_id,
            fields=sorted(k for k in changes if k != "updated_at"),
        )

        return updated

    async def delete(self, webhook_id: str, owner_id: str) -> None:
        """Delete a webhook and its delivery logs.

        Raises:
            NotFoundError: If missing or owned by someone else.
        """
        deleted = await self._subscriptions.delete(webhook_id, owner_id)
        if not deleted:
            raise NotFoundError(details={"webhook_id": webhook_id})

        removed_logs = await self._logs.delete_for_subscription(webhook_id)

        self._logger.info(
            "webhook_deleted",
            webhook_id=webhook_id,
            owner_id=owner_id,
            removed_logs=removed_logs,
        )

    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        """List an owner's webhooks, newest first."""
        return await self._subscriptions.list_by_owner(owner_id)

    async def find_active_by_event(
        self,
        event_type: WebhookEventType | str,
        owner_id: str | None = None,
    ) -> list[Subscription]:
        """Get active webhooks subscribed to an event type.

        Args:
            event_type: Event type.
            owner_id: Restrict to one owner.

        Returns:
            Matching subscriptions.
        """
        return await self._subscriptions.find_active(
            normalize_event_type(event_type),
            owner_id,
        )

    async def get_logs(
        self,
        webhook_id: str,
        owner_id: str,
        *,
        limit: int = 50,
        skip: int = 0,
        event_type: str | None = None,
        status: DeliveryStatus | str | None = None,
    ) -> list[DeliveryLogEntry]:
        """List delivery logs for a webhook, newest first.

        Args:
            webhook_id: Webhook identifier.
            owner_id: Owning principal.
            limit: Maximum results.
            skip: Number of entries to skip.
            event_type: Filter by event type.
            status: Filter by final status.

        Returns:
            Delivery log entries.

        Raises:
            NotFoundError: If missing or owned by someone else.
            ValidationError: On an unknown status filter.
        """
        await self.get(webhook_id, owner_id)

        if status is not None and not isinstance(status, DeliveryStatus):
            try:
                status = DeliveryStatus(status)
            except ValueError as e:
                raise ValidationError(
                    f"Unknown delivery status: {status}",
                    details={"status": status},
                ) from e

        return await self._logs.list_for_subscription(
            webhook_id,
            limit=limit,
            skip=skip,
            event_type=event_type,
            status=status,
        )

    async def get_stats(self, owner_id: str) -> WebhookStatsSummary:
        """Aggregate delivery statistics over an owner's webhooks.

        ``average_response_time`` is the mean of the per-webhook averages and
        ``success_rate`` is successful deliveries as a percentage of triggers.
        """
        webhooks = await self._subscriptions.list_by_owner(owner_id)
        if not webhooks:
            return WebhookStatsSummary()

        total_triggers = sum(w.stats.total_triggers for w in webhooks)
        total_deliveries = sum(w.stats.successful_deliveries for w in webhooks)

        return WebhookStatsSummary(
            total_webhooks=len(webhooks),
            active_webhooks=sum(1 for w in webhooks if w.active),
            total_triggers=total_triggers,
            total_deliveries=total_deliveries,
            total_failures=sum(w.stats.failed_deliveries for w in webhooks),
            average_response_time=(
                sum(w.stats.average_response_time for w in webhooks) / len(webhooks)
            ),
            success_rate=(
                total_deliveries / total_triggers * 100 if total_triggers > 0 else 0.0
            ),
        )
