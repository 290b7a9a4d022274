"""Tests for the delivery worker."""

import httpx
import pytest

from src.webhooks.errors import DeliveryError
from src.webhooks.models import (
    DeliveryAttempt,
    DeliveryLogEntry,
    DeliveryStatus,
    DeliveryTask,
    RetryPolicy,
    Subscription,
)
from src.webhooks.security import SIGNATURE_HEADER, verify_signature
from src.webhooks.storage import InMemoryDeliveryLogStore, InMemorySubscriptionStore
from src.webhooks.worker import DeliveryWorker

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def subscriptions():
    """In-memory subscription store."""
    return InMemorySubscriptionStore()


@pytest.fixture
def logs():
    """In-memory delivery log store."""
    return InMemoryDeliveryLogStore()


@pytest.fixture
def retries():
    """Retries requested by the worker as (task, delay) pairs."""
    return []


@pytest.fixture
def worker(http_client, subscriptions, logs, retries, clock, test_settings):
    """Delivery worker recording retry requests instead of scheduling them."""
    return DeliveryWorker(
        http_client,
        subscriptions,
        logs,
        schedule_retry=lambda task, delay: retries.append((task, delay)),
        clock=clock,
        settings=test_settings,
    )


@pytest.fixture
def subscription():
    """Subscriber with a secret and default retry policy."""
    return Subscription(
        owner_id="user_1",
        url="https://example.com/webhook",
        events=["translation.completed"],
        secret="topsecret",
    )


async def prepare(subscriptions, logs, subscription, attempt=0):
    """Store the subscription and a pending entry; return the task."""
    await subscriptions.create(subscription)
    entry = await logs.create(
        DeliveryLogEntry(
            subscription_id=subscription.id,
            event_type="translation.completed",
            payload={"id": "tr_1"},
        )
    )
    return DeliveryTask(
        subscription=subscription,
        log_entry_id=entry.id,
        event_type=entry.event_type,
        payload=entry.payload,
        attempt=attempt,
    )


# ============================================================================
# Request Tests
# ============================================================================


class TestRequest:
    """Tests for the outbound request."""

    @pytest.mark.asyncio
    async def test_envelope_body(self, worker, subscriptions, logs, subscription, endpoint, clock):
        """Test the body is the standard envelope with a 1-based attempt."""
        task = await prepare(subscriptions, logs, subscription)

        await worker.deliver(task)

        assert endpoint.bodies == [{
            "event": "translation.completed",
            "data": {"id": "tr_1"},
            "timestamp": clock.now().isoformat(),
            "webhook": {"id": subscription.id, "attempt": 1},
        }]
        assert endpoint.requests[0].method == "POST"
        assert str(endpoint.requests[0].url) == "https://example.com/webhook"

    @pytest.mark.asyncio
    async def test_standard_headers(self, worker, subscriptions, logs, subscription, endpoint):
        """Test the standard delivery headers."""
        task = await prepare(subscriptions, logs, subscription, attempt=2)

        await worker.deliver(task)
        headers = endpoint.requests[0].headers

        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == "WebhookRelay/1.0"
        assert headers["X-Webhook-Event"] == "translation.completed"
        assert headers["X-Webhook-ID"] == subscription.id
        assert headers["X-Webhook-Attempt"] == "3"
        assert headers["X-Webhook-Delivery"] == task.log_entry_id

    @pytest.mark.asyncio
    async def test_signature_over_exact_body(
        self, worker, subscriptions, logs, subscription, endpoint
    ):
        """Test the signature verifies against the received bytes."""
        task = await prepare(subscriptions, logs, subscription)

        await worker.deliver(task)
        request = endpoint.requests[0]

        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], "topsecret")

    @pytest.mark.asyncio
    async def test_no_secret_no_signature(self, worker, subscriptions, logs, endpoint):
        """Test that unsigned subscriptions send no signature header."""
        subscription = Subscription(
            owner_id="user_1",
            url="https://example.com/webhook",
            events=["translation.completed"],
        )
        task = await prepare(subscriptions, logs, subscription)

        await worker.deliver(task)

        assert SIGNATURE_HEADER not in endpoint.requests[0].headers

    @pytest.mark.asyncio
    async def test_custom_headers(self, worker, subscriptions, logs, subscription, endpoint):
        """Test custom headers override standard ones but never the signature."""
        subscription = subscription.model_copy(update={
            "headers": {
                "Authorization": "Bearer abc",
                "user-agent": "custom/2",
                "X-Webhook-Signature": "sha256=forged",
            },
        })
        task = await prepare(subscriptions, logs, subscription)

        await worker.deliver(task)
        request = endpoint.requests[0]

        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["User-Agent"] == "custom/2"
        assert request.headers[SIGNATURE_HEADER] != "sha256=forged"
        assert verify_signature(request.content, request.headers[SIGNATURE_HEADER], "topsecret")


# ============================================================================
# Outcome Tests
# ============================================================================


class TestSuccess:
    """Tests for successful deliveries."""

    @pytest.mark.asyncio
    async def test_success_recorded(
        self, worker, subscriptions, logs, subscription, endpoint, clock, retries
    ):
        """Test a 2xx response finalizes the entry and updates stats."""
        endpoint.latency_ms = 120
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.success is True
        assert outcome.final_status == DeliveryStatus.SUCCESS
        assert outcome.status_code == 200
        assert outcome.response_time_ms == pytest.approx(120)
        assert outcome.retry_scheduled is False
        assert retries == []

        entry = await logs.get(task.log_entry_id)
        assert entry.final_status == DeliveryStatus.SUCCESS
        assert len(entry.attempts) == 1
        assert entry.attempts[0].status_code == 200
        assert entry.attempts[0].error is None

        stored = await subscriptions.get(subscription.id)
        assert stored.stats.total_triggers == 1
        assert stored.stats.successful_deliveries == 1
        assert stored.stats.average_response_time == pytest.approx(120)
        assert stored.last_triggered == clock.now()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [200, 201, 204, 299])
    async def test_any_2xx_succeeds(self, worker, subscriptions, logs, subscription, endpoint, status):
        """Test every 2xx status counts as success."""
        endpoint.statuses = [status]
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.success is True
        assert outcome.status_code == status


class TestFailure:
    """Tests for failed deliveries."""

    @pytest.mark.asyncio
    async def test_retry_scheduled(
        self, worker, subscriptions, logs, subscription, endpoint, retries
    ):
        """Test a failure with retries left keeps the entry pending."""
        endpoint.statuses = [500]
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.success is False
        assert outcome.final_status == DeliveryStatus.PENDING
        assert outcome.error == "HTTP 500"
        assert outcome.retry_delay_seconds == pytest.approx(1.0)

        assert len(retries) == 1
        next_task, delay = retries[0]
        assert next_task.attempt == 1
        assert next_task.log_entry_id == task.log_entry_id
        assert delay == pytest.approx(1.0)

        entry = await logs.get(task.log_entry_id)
        assert entry.final_status == DeliveryStatus.PENDING
        assert entry.attempts[0].status_code == 500

        stored = await subscriptions.get(subscription.id)
        assert stored.stats.total_triggers == 0

    @pytest.mark.asyncio
    async def test_backoff_grows(self, worker, subscriptions, logs, subscription, endpoint, retries):
        """Test the delay follows the attempt number."""
        endpoint.statuses = [503]
        subscription = subscription.model_copy(update={
            "retry_policy": RetryPolicy(max_retries=5, initial_delay_ms=100, backoff_multiplier=3),
        })
        task = await prepare(subscriptions, logs, subscription, attempt=2)

        outcome = await worker.deliver(task)

        assert outcome.retry_delay_seconds == pytest.approx(0.9)
        assert retries[0][0].attempt == 3

    @pytest.mark.asyncio
    async def test_final_failure(self, worker, subscriptions, logs, subscription, endpoint, retries):
        """Test the last allowed attempt marks the entry failed."""
        endpoint.statuses = [404]
        task = await prepare(subscriptions, logs, subscription, attempt=3)

        outcome = await worker.deliver(task)

        assert outcome.final_status == DeliveryStatus.FAILED
        assert outcome.retry_scheduled is False
        assert retries == []

        entry = await logs.get(task.log_entry_id)
        assert entry.final_status == DeliveryStatus.FAILED

        stored = await subscriptions.get(subscription.id)
        assert stored.stats.total_triggers == 1
        assert stored.stats.failed_deliveries == 1
        assert stored.stats.average_response_time == 0.0

    @pytest.mark.asyncio
    async def test_zero_retries(self, worker, subscriptions, logs, subscription, endpoint, retries):
        """Test a policy without retries fails after one attempt."""
        endpoint.statuses = [500]
        subscription = subscription.model_copy(update={"retry_policy": RetryPolicy(max_retries=0)})
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.final_status == DeliveryStatus.FAILED
        assert retries == []

    @pytest.mark.asyncio
    async def test_redirect_not_followed(self, worker, subscriptions, logs, subscription, endpoint):
        """Test a redirect counts as a failure."""
        endpoint.statuses = [302]
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.success is False
        assert outcome.error == "HTTP 302"
        assert len(endpoint.requests) == 1

    @pytest.mark.asyncio
    async def test_timeout(self, worker, subscriptions, logs, subscription, endpoint):
        """Test a timeout records status 0 and the configured timeout."""
        endpoint.error = httpx.ReadTimeout("timed out")
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.status_code == 0
        assert outcome.error == "Request timeout after 30.0s"

    @pytest.mark.asyncio
    async def test_connection_error(self, worker, subscriptions, logs, subscription, endpoint):
        """Test a network error records status 0."""
        endpoint.error = httpx.ConnectError("connection refused")
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        entry = await logs.get(task.log_entry_id)
        assert outcome.status_code == 0
        assert outcome.error == "Connection error: connection refused"
        assert entry.attempts[0].status_code == 0
        assert entry.attempts[0].success is False

    @pytest.mark.asyncio
    async def test_unexpected_error(self, worker, subscriptions, logs, subscription, endpoint):
        """Test any other exception is recorded as a failed attempt."""
        endpoint.error = RuntimeError("transport exploded")
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.success is False
        assert outcome.error == "transport exploded"


# ============================================================================
# Send Tests
# ============================================================================


class TestSend:
    """Tests for the raw POST and its failure classification."""

    @pytest.mark.asyncio
    async def test_returns_status(self, worker, endpoint):
        """Test a 2xx response returns its status code."""
        endpoint.statuses = [204]

        status = await worker.send("https://example.com/webhook", b"{}", httpx.Headers())

        assert status == 204

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self, worker, endpoint):
        """Test a non-2xx response raises with its status code."""
        endpoint.statuses = [503]

        with pytest.raises(DeliveryError) as exc_info:
            await worker.send("https://example.com/webhook", b"{}", httpx.Headers())

        assert exc_info.value.status_code == 503
        assert exc_info.value.to_dict()["message"] == "HTTP 503"

    @pytest.mark.asyncio
    async def test_timeout_raises(self, worker, endpoint):
        """Test a timeout raises with status 0."""
        endpoint.error = httpx.ConnectTimeout("timed out")

        with pytest.raises(DeliveryError) as exc_info:
            await worker.send("https://example.com/webhook", b"{}", httpx.Headers())

        assert exc_info.value.status_code == 0
        assert exc_info.value.message == "Request timeout after 30.0s"
        assert isinstance(exc_info.value.__cause__, httpx.TimeoutException)


# ============================================================================
# Bookkeeping Tests
# ============================================================================


class TestBookkeeping:
    """Tests for delivery log and stats bookkeeping failures."""

    @pytest.mark.asyncio
    async def test_missing_log_entry(self, worker, subscriptions, subscription):
        """Test a vanished log entry is skipped without touching stats."""
        await subscriptions.create(subscription)
        task = DeliveryTask(
            subscription=subscription,
            log_entry_id="dlv_gone",
            event_type="translation.completed",
        )

        outcome = await worker.deliver(task)

        assert outcome.success is True
        stored = await subscriptions.get(subscription.id)
        assert stored.stats.total_triggers == 0

    @pytest.mark.asyncio
    async def test_closed_log_entry(self, worker, subscriptions, logs, subscription):
        """Test a duplicate delivery of a finished entry is not counted twice."""
        task = await prepare(subscriptions, logs, subscription)
        await logs.record_attempt(
            task.log_entry_id,
            DeliveryAttempt(status_code=200, success=True),
            DeliveryStatus.SUCCESS,
        )

        await worker.deliver(task)

        entry = await logs.get(task.log_entry_id)
        assert len(entry.attempts) == 1
        stored = await subscriptions.get(subscription.id)
        assert stored.stats.total_triggers == 0

    @pytest.mark.asyncio
    async def test_deleted_subscription(self, worker, subscriptions, logs, subscription):
        """Test stats updates for a deleted webhook are skipped quietly."""
        task = await prepare(subscriptions, logs, subscription)
        await subscriptions.delete(subscription.id, subscription.owner_id)

        outcome = await worker.deliver(task)

        assert outcome.final_status == DeliveryStatus.SUCCESS
        assert (await logs.get(task.log_entry_id)).final_status == DeliveryStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_retry_schedule_failure(
        self, http_client, subscriptions, logs, subscription, endpoint, clock, test_settings
    ):
        """Test a failing retry scheduler leaves the entry pending."""
        endpoint.statuses = [500]

        def refuse(task, delay):
            raise RuntimeError("timers closed")

        worker = DeliveryWorker(
            http_client,
            subscriptions,
            logs,
            schedule_retry=refuse,
            clock=clock,
            settings=test_settings,
        )
        task = await prepare(subscriptions, logs, subscription)

        outcome = await worker.deliver(task)

        assert outcome.final_status == DeliveryStatus.PENDING
        assert outcome.retry_scheduled is False
        assert (await logs.get(task.log_entry_id)).final_status == DeliveryStatus.PENDING
