from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from vatcheck.services.cache import InMemoryResultCache, PostgresResultCache
from vatcheck.services.repository import PostgresJobRepository
from vatcheck.services.store import InMemoryJobStore

logger = logging.getLogger(__name__)


class Housekeeper:
    """Periodic retention sweep for idle jobs and expired cache entries."""

    def __init__(
        self,
        *,
        repository: PostgresJobRepository | InMemoryJobStore,
        cache: InMemoryResultCache | PostgresResultCache,
        job_retention: timedelta,
        interval_seconds: float,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self.job_retention = job_retention
        self.interval_seconds = max(1.0, interval_seconds)
        self._task: asyncio.Task[None] | None = None

    async def sweep(self) -> dict[str, int]:
        purged_jobs = await self._repository.purge_idle_jobs(idle_for=self.job_retention)
        purged_cache = await self._cache.purge_expired()
        if purged_jobs or purged_cache:
            logger.info("housekeeping purged jobs=%s cache_entries=%s", purged_jobs, purged_cache)
        return {"jobs": purged_jobs, "cache_entries": purged_cache}

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="housekeeping")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception as exc:
                logger.exception("housekeeping sweep failed: %s; next attempt in %.0fs", exc, self.interval_seconds)
