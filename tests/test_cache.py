from __future__ import annotations

import asyncio

from vatcheck.services.cache import InMemoryResultCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def test_cache_returns_copy_within_ttl_and_expires_after() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(ttl_seconds=60, clock=clock)

    async def run() -> None:
        await cache.put("NL:123", {"valid": True, "name": "ACME"})
        hit = await cache.get("NL:123")
        assert hit == {"valid": True, "name": "ACME"}
        hit["name"] = "changed"
        assert (await cache.get("NL:123"))["name"] == "ACME"

        clock.now += 60
        assert await cache.get("NL:123") is not None
        clock.now += 1
        assert await cache.get("NL:123") is None

    asyncio.run(run())


def test_purge_expired_drops_only_old_entries() -> None:
    clock = FakeClock()
    cache = InMemoryResultCache(ttl_seconds=10, clock=clock)

    async def run() -> tuple[int, dict | None, dict | None]:
        await cache.put("DE:1", {"valid": True})
        clock.now += 20
        await cache.put("DE:2", {"valid": False})
        purged = await cache.purge_expired()
        return purged, await cache.get("DE:1"), await cache.get("DE:2")

    purged, old, fresh = asyncio.run(run())
    assert purged == 1
    assert old is None
    assert fresh == {"valid": False}
