"""Time source used by the delivery pipeline.

Every timestamp, response-time measurement and retry delay goes through a
``Clock`` so tests can substitute a manually advanced one.
"""

import asyncio
import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Wall-clock time, monotonic time and sleeping."""

    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds for measuring durations."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock:
    """Clock backed by the system time and the running event loop."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
