"""
Fixed-window request counters.

Counters live in process memory and are lost on restart. They guard
against abuse; the usage ledger is the audit trail.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = timedelta(seconds=60)


@dataclass(frozen=True)
class WindowKey:
    """Identifies one counter: who is counted and over which window."""
    principal: str  # "actor" or "group"
    principal_id: str
    granularity: str  # "minute", "hour" or "day"

    def __str__(self) -> str:
        return f"ratelimit:{self.principal}:{self.principal_id}:{self.granularity}"


@dataclass
class WindowCounter:
    """Request count within a fixed window ending at reset_at."""
    count: int
    reset_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.reset_at


class WindowCounterStore:
    """Interface for fixed-window counters.

    A deployment that runs more than one process can implement this on an
    external atomic increment-with-expiry service.
    """

    async def increment(self, key: WindowKey, window: timedelta) -> WindowCounter:
        """Count one request against key and return the updated counter."""
        raise NotImplementedError

    async def start(self) -> None:
        """Start background maintenance, if any."""

    async def stop(self) -> None:
        """Stop background maintenance, if any."""

    async def __aenter__(self) -> "WindowCounterStore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


class InMemoryWindowStore(WindowCounterStore):
    """Single-process counter map with lazy reset and a periodic sweep.

    increment() never awaits, so on one event loop each read-increment-write
    runs without interleaving.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        sweep_interval: timedelta = DEFAULT_SWEEP_INTERVAL
    ):
        """Initialize an empty store.

        Args:
            clock: Time source (defaults to the system clock)
            sweep_interval: How often expired counters are evicted
        """
        if sweep_interval <= timedelta(0):
            raise ValueError("sweep_interval must be > 0")
        self.clock = clock or SystemClock()
        self.sweep_interval = sweep_interval
        self._counters: Dict[WindowKey, WindowCounter] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._counters)

    def get(self, key: WindowKey) -> Optional[WindowCounter]:
        """Return the live counter for key without counting a request."""
        counter = self._counters.get(key)
        if counter is None or counter.is_expired(self.clock.now()):
            return None
        return counter

    async def increment(self, key: WindowKey, window: timedelta) -> WindowCounter:
        now = self.clock.now()
        counter = self._counters.get(key)
        if counter is None or counter.is_expired(now):
            counter = WindowCounter(count=1, reset_at=now + window)
            self._counters[key] = counter
            return counter
        counter.count += 1
        return counter

    def sweep(self) -> int:
        """Evict expired counters.

        Returns:
            Number of counters removed
        """
        now = self.clock.now()
        expired = [key for key, counter in self._counters.items() if counter.is_expired(now)]
        for key in expired:
            del self._counters[key]
        if expired:
            logger.debug("Evicted %d expired rate-limit windows", len(expired))
        return len(expired)

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._sweep_task = asyncio.create_task(self._sweep_forever())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        # wait() raises CancelledError only when the caller itself is cancelled
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.error("Window sweep task failed", exc_info=task.exception())

    async def _sweep_forever(self) -> None:
        interval = self.sweep_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            self.sweep()
