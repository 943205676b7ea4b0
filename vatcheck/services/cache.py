from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheEntry:
    key: str
    payload: dict[str, Any]
    recorded_at: float


class InMemoryResultCache:
    """Process-local cache of successful upstream answers.

    Expired entries are treated as absent on read and dropped by
    :meth:`purge_expired`. Failed lookups are never stored.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = max(0.0, ttl_seconds)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.recorded_at > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return dict(entry.payload)

    async def put(self, key: str, payload: dict[str, Any]) -> None:
        self._entries[key] = CacheEntry(key=key, payload=dict(payload), recorded_at=self._clock())

    async def purge_expired(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, entry in self._entries.items() if entry.recorded_at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def close(self) -> None:
        self._entries.clear()


class PostgresResultCache:
    """Cache table living next to the job store; survives restarts."""

    def __init__(self, pool_factory: Callable[[], Awaitable[asyncpg.Pool]], ttl_seconds: float) -> None:
        self._pool_factory = pool_factory
        self.ttl_seconds = max(0.0, ttl_seconds)

    async def get(self, key: str) -> dict[str, Any] | None:
        pool = await self._pool_factory()
        payload = await pool.fetchval(
            """
            select payload
            from lookup_cache
            where lookup_key = $1
              and recorded_at > now() - ($2::double precision * interval '1 second')
            """,
            key,
            self.ttl_seconds,
        )
        if payload is None:
            return None
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                logger.warning("discarding undecodable cache payload key=%s", key)
                return None
        return payload if isinstance(payload, dict) else None

    async def put(self, key: str, payload: dict[str, Any]) -> None:
        pool = await self._pool_factory()
        await pool.execute(
            """
            insert into lookup_cache (lookup_key, payload, recorded_at)
            values ($1, $2::jsonb, now())
            on conflict (lookup_key) do update
            set payload = excluded.payload,
                recorded_at = excluded.recorded_at
            """,
            key,
            json.dumps(payload),
        )

    async def purge_expired(self) -> int:
        pool = await self._pool_factory()
        deleted = await pool.fetchval(
            """
            with purged as (
              delete from lookup_cache
              where recorded_at <= now() - ($1::double precision * interval '1 second')
              returning 1
            )
            select count(*) from purged
            """,
            self.ttl_seconds,
        )
        return int(deleted or 0)

    async def close(self) -> None:
        return None
