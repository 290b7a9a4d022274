"""Tests for the event dispatcher."""

import threading

import pytest

from src.webhooks.dispatcher import EventDispatcher
from src.webhooks.events import WebhookEventType
from src.webhooks.manager import WebhookManager
from src.webhooks.models import DeliveryStatus
from src.webhooks.scheduler import DeliveryQueue
from src.webhooks.storage import InMemoryDeliveryLogStore, InMemorySubscriptionStore

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def logs():
    """In-memory delivery log store."""
    return InMemoryDeliveryLogStore()


@pytest.fixture
def manager(logs, clock, test_settings):
    """Webhook manager over in-memory stores."""
    return WebhookManager(
        InMemorySubscriptionStore(),
        logs,
        clock=clock,
        settings=test_settings,
    )


@pytest.fixture
def queue():
    """Delivery queue."""
    return DeliveryQueue()


@pytest.fixture
def wakes():
    """Record of on_enqueued calls."""
    return []


@pytest.fixture
def dispatcher(manager, logs, queue, clock, wakes):
    """Event dispatcher recording wake-ups."""
    return EventDispatcher(
        manager,
        logs,
        queue,
        clock=clock,
        on_enqueued=lambda: wakes.append(True),
    )


async def register(manager, owner_id="user_1", events=None, **kwargs):
    """Register a webhook for the given events."""
    return await manager.register(owner_id, {
        "url": "https://example.com/webhook",
        "events": events or ["translation.completed"],
        **kwargs,
    })


class BrokenLogStore(InMemoryDeliveryLogStore):
    """Log store whose inserts fail for one subscription."""

    def __init__(self, failing_subscription_id: str) -> None:
        super().__init__()
        self.failing_subscription_id = failing_subscription_id

    async def create(self, entry):
        if entry.subscription_id == self.failing_subscription_id:
            raise RuntimeError("disk full")
        return await super().create(entry)


# ============================================================================
# Fan-out Tests
# ============================================================================


class TestTriggerEvent:
    """Tests for EventDispatcher.trigger_event."""

    @pytest.mark.asyncio
    async def test_no_matching_webhooks(self, dispatcher, manager, queue, logs, wakes):
        """Test an event nobody subscribes to has no side effects."""
        webhook = await register(manager, events=["user.login"])

        entries = await dispatcher.trigger_event("translation.completed", {"id": 1})

        assert entries == []
        assert len(queue) == 0
        assert wakes == []
        assert await logs.list_for_subscription(webhook.id) == []

    @pytest.mark.asyncio
    async def test_one_entry_per_subscription(self, dispatcher, manager, queue, wakes, clock):
        """Test each matching webhook gets a pending entry and a queued task."""
        first = await register(manager)
        second = await register(manager, owner_id="user_2")

        entries = await dispatcher.trigger_event(
            WebhookEventType.TRANSLATION_COMPLETED,
            {"id": "tr_1"},
        )

        assert {e.subscription_id for e in entries} == {first.id, second.id}
        assert all(e.final_status == DeliveryStatus.PENDING for e in entries)
        assert all(e.attempts == [] for e in entries)
        assert all(e.created_at == clock.now() for e in entries)

        tasks = list(queue)
        assert [t.log_entry_id for t in tasks] == [e.id for e in entries]
        assert all(t.attempt == 0 for t in tasks)
        assert all(t.event_type == "translation.completed" for t in tasks)
        assert wakes == [True]

    @pytest.mark.asyncio
    async def test_skips_inactive(self, dispatcher, manager, queue):
        """Test deactivated webhooks receive nothing."""
        webhook = await register(manager)
        await manager.update(webhook.id, "user_1", {"active": False})

        assert await dispatcher.trigger_event("translation.completed") == []
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_owner_scope(self, dispatcher, manager):
        """Test an owner-scoped trigger only reaches that owner's webhooks."""
        mine = await register(manager)
        await register(manager, owner_id="user_2")

        entries = await dispatcher.trigger_event("translation.completed", {}, owner_id="user_1")

        assert [e.subscription_id for e in entries] == [mine.id]

    @pytest.mark.asyncio
    async def test_payload_snapshot(self, dispatcher, manager, queue, logs):
        """Test later mutation of the payload does not reach deliveries."""
        await register(manager)
        await register(manager)
        payload = {"id": "tr_1", "segments": [{"text": "hola"}]}

        entries = await dispatcher.trigger_event("translation.completed", payload)
        payload["segments"][0]["text"] = "changed"
        payload["id"] = "tr_2"

        for task in queue:
            assert task.payload == {"id": "tr_1", "segments": [{"text": "hola"}]}
        for entry in entries:
            stored = await logs.get(entry.id)
            assert stored.payload["segments"][0]["text"] == "hola"

        # Per-delivery copies are independent of each other
        tasks = list(queue)
        tasks[0].payload["segments"][0]["text"] = "mutated"
        assert tasks[1].payload["segments"][0]["text"] == "hola"

    @pytest.mark.asyncio
    async def test_missing_payload(self, dispatcher, manager, queue):
        """Test a missing payload becomes an empty object."""
        await register(manager)

        await dispatcher.trigger_event("translation.completed")

        assert list(queue)[0].payload == {}

    @pytest.mark.asyncio
    async def test_unknown_event_is_noop(self, dispatcher, manager, queue):
        """Test an event outside the vocabulary matches nothing and does not raise."""
        await register(manager)

        assert await dispatcher.trigger_event("not.an.event", {"x": 1}) == []
        assert len(queue) == 0


# ============================================================================
# Failure Handling Tests
# ============================================================================


class TestTriggerFailures:
    """Tests that trigger_event never raises into the producer."""

    @pytest.mark.asyncio
    async def test_queue_full_keeps_pending_entry(self, manager, logs, clock):
        """Test an entry stays pending when the queue rejects its task."""
        first = await register(manager)
        second = await register(manager)
        queue = DeliveryQueue(maxlen=1)
        wakes = []
        dispatcher = EventDispatcher(
            manager, logs, queue, clock=clock, on_enqueued=lambda: wakes.append(True)
        )

        entries = await dispatcher.trigger_event("translation.completed", {"id": 1})

        assert len(entries) == 2
        assert len(queue) == 1
        assert wakes == [True]
        for webhook in (first, second):
            stored = await logs.list_for_subscription(webhook.id)
            assert stored[0].final_status == DeliveryStatus.PENDING

    @pytest.mark.asyncio
    async def test_log_store_failure_skips_subscription(self, clock, test_settings):
        """Test a failed entry insert skips only that subscription."""
        subscriptions = InMemorySubscriptionStore()
        plain_manager = WebhookManager(
            subscriptions, InMemoryDeliveryLogStore(), clock=clock, settings=test_settings
        )
        broken = await register(plain_manager)
        healthy = await register(plain_manager)
        logs = BrokenLogStore(broken.id)
        queue = DeliveryQueue()
        dispatcher = EventDispatcher(plain_manager, logs, queue, clock=clock)

        entries = await dispatcher.trigger_event("translation.completed", {"id": 1})

        assert [e.subscription_id for e in entries] == [healthy.id]
        assert [t.subscription.id for t in queue] == [healthy.id]

    @pytest.mark.asyncio
    async def test_lookup_failure(self, logs, queue, clock):
        """Test a failing subscription lookup returns no entries."""

        class BrokenManager:
            async def find_active_by_event(self, event_type, owner_id=None):
                raise RuntimeError("database locked")

        dispatcher = EventDispatcher(BrokenManager(), logs, queue, clock=clock)

        assert await dispatcher.trigger_event("translation.completed", {}) == []
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_non_dict_payload(self, dispatcher, manager, logs, queue, wakes):
        """Test a payload that is not an object is logged and skipped."""
        webhook = await register(manager)

        entries = await dispatcher.trigger_event(
            "translation.completed", ["not", "a", "dict"]
        )

        assert entries == []
        assert len(queue) == 0
        assert wakes == []
        assert await logs.list_for_subscription(webhook.id) == []

    @pytest.mark.asyncio
    async def test_uncopyable_payload(self, dispatcher, manager, queue):
        """Test a payload that cannot be snapshotted does not raise."""
        await register(manager)

        entries = await dispatcher.trigger_event(
            "translation.completed", {"lock": threading.Lock()}
        )

        assert entries == []
        assert len(queue) == 0
