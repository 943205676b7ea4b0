from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from vatcheck.core.keys import parse_lookup_line
from vatcheck.jobs.housekeeping import Housekeeper
from vatcheck.services.cache import InMemoryResultCache
from vatcheck.services.repository import NewItem
from vatcheck.services.store import InMemoryJobStore


def test_sweep_purges_idle_jobs_and_expired_cache_entries() -> None:
    wall = {"now": datetime(2026, 3, 1, tzinfo=timezone.utc)}
    mono = {"now": 0.0}
    store = InMemoryJobStore(clock=lambda: wall["now"])
    cache = InMemoryResultCache(ttl_seconds=60, clock=lambda: mono["now"])
    housekeeper = Housekeeper(
        repository=store,
        cache=cache,
        job_retention=timedelta(hours=6),
        interval_seconds=600,
    )

    async def run() -> dict[str, int]:
        line = parse_lookup_line("FR1")
        await store.create_job([NewItem(input=line.input, key=line.key, cached_payload={"valid": True})])
        await cache.put("FR:1", {"valid": True})
        wall["now"] += timedelta(hours=7)
        mono["now"] += 120
        return await housekeeper.sweep()

    assert asyncio.run(run()) == {"jobs": 1, "cache_entries": 1}
    assert store.jobs == {}
