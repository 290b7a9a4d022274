"""Delivery queue, batch scheduler and retry timers.

The queue buffers delivery tasks in FIFO order. A single consumer task
releases them in bounded batches, and failed deliveries come back to the
queue tail through cancellable retry timers.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.webhooks.clock import Clock
from src.webhooks.errors import QueueFullError
from src.webhooks.models import DeliveryTask

logger = structlog.get_logger(__name__)

# Type for the per-task delivery handler
TaskHandler = Callable[[DeliveryTask], Awaitable[Any]]

DEFAULT_QUEUE_MAX_SIZE = 10000


class DeliveryQueue:
    """Bounded FIFO of pending delivery tasks."""

    def __init__(self, maxlen: int = DEFAULT_QUEUE_MAX_SIZE) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self._tasks: deque[DeliveryTask] = deque()
        self._maxlen = maxlen

    @property
    def maxlen(self) -> int:
        return self._maxlen

    def push(self, task: DeliveryTask) -> None:
        """Append a task to the tail.

        Raises:
            QueueFullError: If the queue is at capacity.
        """
        if len(self._tasks) >= self._maxlen:
            raise QueueFullError(
                f"Delivery queue is full ({self._maxlen} tasks)",
                details={
                    "log_entry_id": task.log_entry_id,
                    "webhook_id": task.subscription.id,
                },
            )
        self._tasks.append(task)

    def take(self, n: int) -> list[DeliveryTask]:
        """Remove and return up to ``n`` tasks from the head."""
        batch: list[DeliveryTask] = []
        while self._tasks and len(batch) < n:
            batch.append(self._tasks.popleft())
        return batch

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[DeliveryTask]:
        return iter(list(self._tasks))


class DeliveryScheduler:
    """Single consumer that releases queued deliveries in batches.

    The consumer wakes on every tick or when ``wake()`` is called, then runs
    passes until the queue is empty. At most one pass runs at a time; a pass
    requested while another is running is a no-op.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        handler: TaskHandler,
        *,
        batch_size: int = 10,
        tick_interval: float = 1.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            queue: Queue to consume.
            handler: Coroutine run for each released task.
            batch_size: Maximum concurrent deliveries per pass.
            tick_interval: Seconds between wake-ups when idle.
        """
        self._queue = queue
        self._handler = handler
        self._batch_size = max(1, batch_size)
        self._tick_interval = tick_interval
        self._wake_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._busy = False
        self._stopping = False
        self._in_flight: set[str] = set()
        self._task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="delivery_scheduler")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._busy

    def is_in_flight(self, log_entry_id: str) -> bool:
        """Whether a task for this log entry was taken by the current pass."""
        return log_entry_id in self._in_flight

    def start(self) -> None:
        """Start the consumer task (no-op if already running)."""
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run(), name="webhook-delivery-scheduler")
        self._logger.info(
            "scheduler_started",
            batch_size=self._batch_size,
            tick_interval=self._tick_interval,
        )

    async def stop(self) -> None:
        """Stop the consumer after its current pass completes."""
        if self._task is None:
            return
        self._stopping = True
        self._wake_event.set()
        try:
            await self._task
        finally:
            self._task = None
        self._logger.info("scheduler_stopped", queued=len(self._queue))

    def wake(self) -> None:
        """Request queue processing; idempotent."""
        self._wake_event.set()

    async def run(self) -> None:
        """Consumer loop: wait for a tick or wake-up, then empty the queue."""
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._tick_interval)
            except TimeoutError:
                pass
            self._wake_event.clear()

            while len(self._queue) and not self._stopping:
                if await self.run_pass() == 0:
                    break

    async def run_pass(self) -> int:
        """Release one batch and wait for all of its deliveries.

        Returns:
            Number of tasks processed (0 if the queue was empty or a pass
            was already running).
        """
        if self._busy:
            return 0

        self._busy = True
        self._idle.clear()
        try:
            batch = self._queue.take(self._batch_size)
            if not batch:
                return 0
            self._in_flight.update(task.log_entry_id for task in batch)

            self._logger.debug("pass_started", batch=len(batch), remaining=len(self._queue))

            results = await asyncio.gather(
                *(self._handler(task) for task in batch),
                return_exceptions=True,
            )
            for task, result in zip(batch, results, strict=True):
                if isinstance(result, Exception):
                    self._logger.error(
                        "delivery_handler_error",
                        log_entry_id=task.log_entry_id,
                        webhook_id=task.subscription.id,
                        error=str(result),
                        error_type=type(result).__name__,
                    )

            return len(batch)
        finally:
            self._in_flight.clear()
            self._busy = False
            self._idle.set()

    async def drain(self) -> int:
        """Run passes until the queue is empty.

        Waits for a pass already in progress instead of skipping it.

        Returns:
            Number of tasks processed by this call.
        """
        processed = 0
        while len(self._queue):
            if self._busy:
                await self._idle.wait()
                continue
            processed += await self.run_pass()
        return processed


@dataclass
class ScheduledRetry:
    """A delivery task waiting for its backoff delay to elapse."""

    task: DeliveryTask
    delay_seconds: float
    due_at: float
    handle: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def subscription_id(self) -> str:
        return self.task.subscription.id

    @property
    def log_entry_id(self) -> str:
        return self.task.log_entry_id


class RetryTimers:
    """Tracked, cancellable timers that re-push failed deliveries.

    On expiry a timer hands its task to ``on_fire``, which puts it back on
    the queue; the task is never delivered inline from the timer.
    """

    def __init__(
        self,
        clock: Clock,
        on_fire: Callable[[DeliveryTask], Awaitable[None]],
    ) -> None:
        self._clock = clock
        self._on_fire = on_fire
        self._timers: dict[str, ScheduledRetry] = {}
        # Fired timers whose re-push has not finished yet
        self._firing: set[str] = set()
        self._closed = False
        self._logger = logger.bind(component="retry_timers")

    def schedule(self, task: DeliveryTask, delay_seconds: float) -> ScheduledRetry | None:
        """Re-push ``task`` after ``delay_seconds``.

        Args:
            task: Task for the next attempt.
            delay_seconds: Backoff delay.

        Returns:
            The scheduled retry, or None once the timers are shut down.
        """
        if self._closed:
            self._logger.warning(
                "retry_dropped_shutdown",
                log_entry_id=task.log_entry_id,
                webhook_id=task.subscription.id,
            )
            return None

        existing = self._timers.pop(task.log_entry_id, None)
        if existing is not None and existing.handle is not None:
            existing.handle.cancel()

        retry = ScheduledRetry(
            task=task,
            delay_seconds=delay_seconds,
            due_at=self._clock.monotonic() + delay_seconds,
        )
        retry.handle = asyncio.create_task(
            self._fire(retry),
            name=f"webhook-retry-{task.log_entry_id}",
        )
        self._timers[task.log_entry_id] = retry

        self._logger.debug(
            "retry_scheduled",
            log_entry_id=task.log_entry_id,
            webhook_id=task.subscription.id,
            attempt=task.attempt,
            delay_seconds=delay_seconds,
        )
        return retry

    async def _fire(self, retry: ScheduledRetry) -> None:
        await self._clock.sleep(retry.delay_seconds)

        if self._timers.get(retry.log_entry_id) is retry:
            del self._timers[retry.log_entry_id]

        self._firing.add(retry.log_entry_id)
        try:
            await self._on_fire(retry.task)
        except Exception as e:
            self._logger.error(
                "retry_requeue_failed",
                log_entry_id=retry.log_entry_id,
                webhook_id=retry.subscription_id,
                error=str(e),
            )
        finally:
            self._firing.discard(retry.log_entry_id)

    def pending(self, subscription_id: str | None = None) -> list[ScheduledRetry]:
        """List scheduled retries, soonest first."""
        retries = [
            r for r in self._timers.values()
            if subscription_id is None or r.subscription_id == subscription_id
        ]
        return sorted(retries, key=lambda r: r.due_at)

    def is_scheduled(self, log_entry_id: str) -> bool:
        """Whether a retry for this log entry is waiting or being re-pushed."""
        return log_entry_id in self._timers or log_entry_id in self._firing

    def cancel_for_subscription(self, subscription_id: str) -> int:
        """Cancel every scheduled retry of one subscription.

        Returns:
            Number of timers cancelled.
        """
        doomed = [r for r in self._timers.values() if r.subscription_id == subscription_id]
        for retry in doomed:
            del self._timers[retry.log_entry_id]
            if retry.handle is not None:
                retry.handle.cancel()

        if doomed:
            self._logger.info(
                "retries_cancelled",
                webhook_id=subscription_id,
                count=len(doomed),
            )
        return len(doomed)

    async def shutdown(self) -> None:
        """Cancel all timers and refuse new ones."""
        self._closed = True
        handles = [r.handle for r in self._timers.values() if r.handle is not None]
        self._timers.clear()
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
            self._logger.info("retry_timers_shutdown", cancelled=len(handles))

    def __len__(self) -> int:
        return len(self._timers)
