"""Delivery worker: one signed HTTP attempt plus its bookkeeping.

Handles sending a webhook envelope to a subscriber endpoint, recording
the attempt in the delivery log, updating subscription stats and handing
retryable failures back to the retry timers.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from src.config import Settings
from src.config import settings as default_settings
from src.webhooks.clock import Clock, SystemClock
from src.webhooks.errors import DeliveryError, DeliveryLogClosedError, NotFoundError
from src.webhooks.events import build_envelope
from src.webhooks.models import DeliveryAttempt, DeliveryStatus, DeliveryTask
from src.webhooks.security import (
    ATTEMPT_HEADER,
    DELIVERY_HEADER,
    EVENT_HEADER,
    ID_HEADER,
    SIGNATURE_HEADER,
    generate_signature,
)
from src.webhooks.storage import DeliveryLogStore, SubscriptionStore

logger = structlog.get_logger(__name__)

# Called with the next-attempt task and the backoff delay in seconds
RetryScheduler = Callable[[DeliveryTask, float], Any]


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt."""

    log_entry_id: str
    webhook_id: str
    attempt: int
    success: bool
    status_code: int
    response_time_ms: float
    final_status: DeliveryStatus
    error: str | None = None
    retry_delay_seconds: float | None = None

    @property
    def retry_scheduled(self) -> bool:
        return self.retry_delay_seconds is not None


class DeliveryWorker:
    """Performs webhook deliveries.

    Features:
    - Compact JSON envelope signed over the exact body bytes
    - Bounded request timeout
    - Success/failure classification with status 0 for network errors
    - Exponential backoff retry through an injected scheduler
    - Bookkeeping failures are logged, never raised
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        subscriptions: SubscriptionStore,
        logs: DeliveryLogStore,
        *,
        schedule_retry: RetryScheduler,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            client: Shared HTTP client.
            subscriptions: Store receiving stats updates.
            logs: Store receiving delivery attempts.
            schedule_retry: Callback that re-pushes a task after a delay.
            clock: Time source (system clock if not provided).
            settings: Settings (global settings if not provided).
        """
        self._client = client
        self._subscriptions = subscriptions
        self._logs = logs
        self._schedule_retry = schedule_retry
        self._clock = clock or SystemClock()
        self._settings = settings or default_settings
        self._timeout = self._settings.WEBHOOK_REQUEST_TIMEOUT
        self._logger = logger.bind(component="delivery_worker")

    def build_headers(self, task: DeliveryTask, body: bytes) -> httpx.Headers:
        """Build request headers for one attempt.

        Custom headers are applied over the standard ones; the signature is
        applied last so it cannot be overridden.
        """
        subscription = task.subscription
        headers = httpx.Headers({
            "Content-Type": "application/json",
            "User-Agent": self._settings.WEBHOOK_USER_AGENT,
            EVENT_HEADER: task.event_type,
            ID_HEADER: subscription.id,
            ATTEMPT_HEADER: str(task.attempt + 1),
            DELIVERY_HEADER: task.log_entry_id,
        })
        for name, value in subscription.headers.items():
            headers[name] = value
        if subscription.secret:
            headers[SIGNATURE_HEADER] = generate_signature(body, subscription.secret)
        return headers

    async def send(self, url: str, body: bytes, headers: httpx.Headers) -> int:
        """POST one delivery.

        Returns:
            The 2xx status code of the response.

        Raises:
            DeliveryError: When no 2xx response was received.
        """
        try:
            response = await self._client.post(
                url,
                content=body,
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Request timeout after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Connection error: {e}") from e

        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.status_code

    async def deliver(self, task: DeliveryTask) -> DeliveryOutcome:
        """Make a single delivery attempt and record its outcome.

        Args:
            task: Task to deliver.

        Returns:
            Outcome of the attempt.
        """
        subscription = task.subscription
        attempted_at = self._clock.now()

        envelope = build_envelope(
            task.event_type,
            task.payload,
            webhook_id=subscription.id,
            attempt=task.attempt,
            timestamp=attempted_at,
        )
        body = envelope.to_bytes()
        headers = self.build_headers(task, body)

        self._logger.debug(
            "attempting_delivery",
            log_entry_id=task.log_entry_id,
            webhook_id=subscription.id,
            attempt=task.attempt + 1,
            url=subscription.url,
        )

        status_code = 0
        error: str | None = None
        started = self._clock.monotonic()
        try:
            status_code = await self.send(subscription.url, body, headers)
        except DeliveryError as e:
            status_code = e.status_code
            error = e.message
        except Exception as e:
            error = str(e) or type(e).__name__
        response_time_ms = (self._clock.monotonic() - started) * 1000

        success = error is None
        attempt = DeliveryAttempt(
            timestamp=attempted_at,
            status_code=status_code,
            response_time_ms=response_time_ms,
            error=error,
            success=success,
        )

        if success:
            return await self._handle_success(task, attempt)
        return await self._handle_failure(task, attempt)

    async def _handle_success(
        self,
        task: DeliveryTask,
        attempt: DeliveryAttempt,
    ) -> DeliveryOutcome:
        if await self._record(task, attempt, DeliveryStatus.SUCCESS):
            await self._increment_stats(task, attempt)

        self._logger.info(
            "delivery_success",
            log_entry_id=task.log_entry_id,
            webhook_id=task.subscription.id,
            status_code=attempt.status_code,
            attempt=task.attempt + 1,
            response_time_ms=round(attempt.response_time_ms, 2),
        )

        return self._outcome(task, attempt, DeliveryStatus.SUCCESS)

    async def _handle_failure(
        self,
        task: DeliveryTask,
        attempt: DeliveryAttempt,
    ) -> DeliveryOutcome:
        policy = task.subscription.retry_policy

        if task.attempt < policy.max_retries:
            delay = policy.delay_seconds(task.attempt)
            self._logger.warning(
                "delivery_attempt_failed",
                log_entry_id=task.log_entry_id,
                webhook_id=task.subscription.id,
                attempt=task.attempt + 1,
                status_code=attempt.status_code,
                error=attempt.error,
                retry_in_seconds=delay,
            )
            if not await self._record(task, attempt, DeliveryStatus.PENDING):
                return self._outcome(task, attempt, DeliveryStatus.PENDING)
            try:
                self._schedule_retry(task.next_attempt(), delay)
            except Exception as e:
                # Entry stays pending for the recovery sweep
                self._logger.error(
                    "retry_schedule_failed",
                    log_entry_id=task.log_entry_id,
                    webhook_id=task.subscription.id,
                    error=str(e),
                )
                return self._outcome(task, attempt, DeliveryStatus.PENDING)
            return self._outcome(task, attempt, DeliveryStatus.PENDING, retry_delay=delay)

        if await self._record(task, attempt, DeliveryStatus.FAILED):
            await self._increment_stats(task, attempt)

        self._logger.error(
            "delivery_failed_permanently",
            log_entry_id=task.log_entry_id,
            webhook_id=task.subscription.id,
            attempts=task.attempt + 1,
            status_code=attempt.status_code,
            error=attempt.error,
        )

        return self._outcome(task, attempt, DeliveryStatus.FAILED)

    async def _record(
        self,
        task: DeliveryTask,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
    ) -> bool:
        """Append the attempt to the delivery log; False if that was not possible."""
        try:
            await self._logs.record_attempt(task.log_entry_id, attempt, final_status)
        except (NotFoundError, DeliveryLogClosedError) as e:
            self._logger.warning(
                "delivery_log_update_skipped",
                log_entry_id=task.log_entry_id,
                webhook_id=task.subscription.id,
                reason=e.message,
            )
            return False
        except Exception as e:
            self._logger.error(
                "delivery_log_update_failed",
                log_entry_id=task.log_entry_id,
                webhook_id=task.subscription.id,
                error=str(e),
            )
            return False
        return True

    async def _increment_stats(self, task: DeliveryTask, attempt: DeliveryAttempt) -> None:
        try:
            await self._subscriptions.increment_stats(
                task.subscription.id,
                success=attempt.success,
                response_time_ms=attempt.response_time_ms,
                at=self._clock.now(),
            )
        except NotFoundError:
            self._logger.warning(
                "stats_update_skipped",
                webhook_id=task.subscription.id,
                reason="webhook deleted",
            )
        except Exception as e:
            self._logger.error(
                "stats_update_failed",
                webhook_id=task.subscription.id,
                error=str(e),
            )

    @staticmethod
    def _outcome(
        task: DeliveryTask,
        attempt: DeliveryAttempt,
        final_status: DeliveryStatus,
        *,
        retry_delay: float | None = None,
    ) -> DeliveryOutcome:
        return DeliveryOutcome(
            log_entry_id=task.log_entry_id,
            webhook_id=task.subscription.id,
            attempt=task.attempt,
            success=attempt.success,
            status_code=attempt.status_code,
            response_time_ms=attempt.response_time_ms,
            final_status=final_status,
            error=attempt.error,
            retry_delay_seconds=retry_delay,
        )
