"""Reservation-based pacing for fast-lane upstream calls.

Each call reserves a start slot under a single lock and then sleeps until
that slot outside the lock, so reservations are strictly ordered while the
waiting itself happens concurrently per worker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping

from vatcheck.core.keys import normalize_jurisdiction

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        *,
        global_gap_seconds: float,
        partition_gap_seconds: float,
        partition_gap_overrides: Mapping[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.global_gap_seconds = max(0.0, global_gap_seconds)
        self.partition_gap_seconds = max(0.0, partition_gap_seconds)
        self.partition_gap_overrides = {
            normalize_jurisdiction(code): max(0.0, float(gap)) for code, gap in (partition_gap_overrides or {}).items()
        }
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_global_at = 0.0
        self._next_partition_at: dict[str, float] = {}

    def partition_gap(self, partition: str) -> float:
        return self.partition_gap_overrides.get(partition, self.partition_gap_seconds)

    async def reserve(self, partition: str) -> float:
        """Return the start time reserved for the next call in ``partition``."""
        async with self._lock:
            now = self._clock()
            start = max(now, self._next_global_at, self._next_partition_at.get(partition, 0.0))
            self._next_global_at = start + self.global_gap_seconds
            self._next_partition_at[partition] = start + self.partition_gap(partition)
            return start

    async def acquire(self, partition: str) -> float:
        start = await self.reserve(partition)
        wait_seconds = start - self._clock()
        if wait_seconds > 0:
            logger.debug("rate limiter wait partition=%s seconds=%.3f", partition, wait_seconds)
            await self._sleep(wait_seconds)
        return start
