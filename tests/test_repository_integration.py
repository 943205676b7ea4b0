from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from vatcheck.core.keys import parse_lookup_line
from vatcheck.services.cache import PostgresResultCache
from vatcheck.services.repository import (
    NewItem,
    PostgresJobRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("VATCHECK_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require VATCHECK_DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_truncate_tables(database_url))


def _items(*raw: str) -> list[NewItem]:
    return [NewItem(input=line.input, key=line.key) for line in map(parse_lookup_line, raw)]


def test_job_lifecycle_survives_repository_restart(database_url: str) -> None:
    async def scenario() -> None:
        repository = PostgresJobRepository(database_url, min_pool_size=1, max_pool_size=2)
        try:
            job = await repository.create_job(_items("FR1", "FR2"), label="case-9")
            assert (job.status, job.total, job.done, job.label) == ("queued", 2, 0, "case-9")

            now = datetime.now(timezone.utc)
            first = await repository.claim_next_due_item(now)
            assert first is not None and first.lookup_key == "FR:1"
            with pytest.raises(RepositoryConflictError):
                await repository.mark_item_done(job.job_id, "FR:2", payload={"valid": True})

            retried = await repository.mark_item_retry(
                job.job_id,
                first.lookup_key,
                attempts=1,
                next_due_at=now + timedelta(minutes=5),
                error_code="MS_MAX_CONCURRENT_REQ",
                error_message="busy",
            )
            assert retried.state == "retry"
            assert (await repository.get_job(job.job_id)).message == "retry scheduled: MS_MAX_CONCURRENT_REQ"

            second = await repository.claim_next_due_item(now)
            assert second is not None and second.lookup_key == "FR:2"
            assert await repository.claim_next_due_item(now) is None
        finally:
            await repository.close()

        restarted = PostgresJobRepository(database_url, min_pool_size=1, max_pool_size=2)
        try:
            assert await restarted.requeue_interrupted_items() == 1
            job_after = await restarted.get_job(job.job_id)
            assert job_after.message == "resumed after restart"
            item = await restarted.claim_next_due_item(now)
            assert item is not None and item.lookup_key == "FR:2"
            done = await restarted.mark_item_done(job.job_id, item.lookup_key, payload={"valid": True, "name": "X"})
            assert done.result_payload == {"valid": True, "name": "X"}

            item = await restarted.claim_next_due_item(now + timedelta(minutes=5))
            assert item is not None and item.attempts == 1
            await restarted.mark_item_error(
                job.job_id, item.lookup_key, attempts=2, error_code="INVALID_INPUT", error_message="bad"
            )
            finished = await restarted.get_job(job.job_id)
            assert (finished.status, finished.done, finished.message) == ("completed", 2, None)
            assert [i.state for i in await restarted.list_job_items(job.job_id)] == ["error", "done"]
        finally:
            await restarted.close()

    _run(scenario())


def test_unknown_and_malformed_job_ids_raise_not_found(database_url: str) -> None:
    async def scenario() -> None:
        repository = PostgresJobRepository(database_url, min_pool_size=1, max_pool_size=2)
        try:
            with pytest.raises(RepositoryNotFoundError):
                await repository.get_job("not-a-uuid")
            with pytest.raises(RepositoryNotFoundError):
                await repository.get_job("00000000-0000-0000-0000-000000000000")
        finally:
            await repository.close()

    _run(scenario())


def test_postgres_cache_round_trip_and_purge(database_url: str) -> None:
    async def scenario() -> None:
        repository = PostgresJobRepository(database_url, min_pool_size=1, max_pool_size=2)
        try:
            cache = PostgresResultCache(repository.get_pool, ttl_seconds=3600)
            await cache.put("NL:1", {"valid": True, "name": "ACME"})
            assert await cache.get("NL:1") == {"valid": True, "name": "ACME"}
            assert await cache.get("NL:2") is None
            assert await cache.purge_expired() == 0

            expired = PostgresResultCache(repository.get_pool, ttl_seconds=0)
            assert await expired.get("NL:1") is None
            assert await expired.purge_expired() == 1
        finally:
            await repository.close()

    _run(scenario())


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _truncate_tables(database_url: str) -> None:
    repository = PostgresJobRepository(database_url, min_pool_size=1, max_pool_size=1)
    try:
        await repository.get_pool()
    finally:
        await repository.close()
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute("truncate table lookup_items, lookup_jobs, lookup_cache")
    finally:
        await conn.close()
