"""Shared fixtures for webhook tests."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from src.config import Settings
from src.webhooks.service import WebhookService


async def settle(rounds: int = 20) -> None:
    """Let ready callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._monotonic = 0.0
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (self._monotonic + seconds, future)
        self._sleepers.append(entry)
        try:
            await future
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    def tick(self, seconds: float) -> None:
        """Move time forward without waking sleepers."""
        self._monotonic += seconds
        self._now += timedelta(seconds=seconds)

    @property
    def pending_deadlines(self) -> list[float]:
        return sorted(d for d, f in self._sleepers if not f.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline passes."""
        await settle()
        target = self._monotonic + seconds
        while True:
            due = sorted(
                (s for s in self._sleepers if s[0] <= target and not s[1].done()),
                key=lambda s: s[0],
            )
            if not due:
                break
            deadline, future = due[0]
            self.tick(deadline - self._monotonic)
            future.set_result(None)
            await settle()
        self.tick(target - self._monotonic)
        await settle()


class RecordingEndpoint:
    """Subscriber endpoint for ``httpx.MockTransport``.

    Responds with the queued status codes in order (the last one repeats)
    and records every request.
    """

    def __init__(
        self,
        clock: ManualClock | None = None,
        statuses: list[int] | None = None,
        latency_ms: float = 0.0,
    ) -> None:
        self.clock = clock
        self.statuses = list(statuses or [200])
        self.latency_ms = latency_ms
        self.error: Exception | None = None
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.clock is not None and self.latency_ms:
            self.clock.tick(self.latency_ms / 1000)
        if self.error is not None:
            raise self.error
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"received": True})

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return ManualClock()


@pytest.fixture
def test_settings():
    """Settings with recovery on start disabled."""
    return Settings(WEBHOOK_RECOVER_ON_START=False)


@pytest.fixture
def endpoint(clock):
    """Recording subscriber endpoint answering 200."""
    return RecordingEndpoint(clock)


@pytest.fixture
def http_client(endpoint):
    """HTTP client routed to the recording endpoint."""
    return httpx.AsyncClient(transport=httpx.MockTransport(endpoint))


@pytest.fixture
def service(http_client, clock, test_settings):
    """Webhook service with in-memory stores and a manual clock."""
    return WebhookService(client=http_client, clock=clock, settings=test_settings)
