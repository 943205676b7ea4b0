from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

from vatcheck.core.keys import LookupKey

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


ITEM_QUEUED = "queued"
ITEM_PROCESSING = "processing"
ITEM_RETRY = "retry"
ITEM_DONE = "done"
ITEM_ERROR = "error"
TERMINAL_ITEM_STATES = {ITEM_DONE, ITEM_ERROR}
DUE_ITEM_STATES = {ITEM_QUEUED, ITEM_RETRY}

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"


@dataclass(slots=True)
class NewItem:
    input: str
    key: LookupKey
    cached_payload: dict[str, Any] | None = None


@dataclass(slots=True)
class JobRecord:
    job_id: str
    status: str
    total: int
    done: int
    created_at: datetime
    updated_at: datetime
    label: str | None = None
    message: str | None = None


@dataclass(slots=True)
class ItemRecord:
    job_id: str
    lookup_key: str
    position: int
    input: str
    jurisdiction_code: str
    identifier_body: str
    state: str
    attempts: int = 0
    next_due_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    result_payload: dict[str, Any] | None = None
    source: str | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> LookupKey:
        return LookupKey(jurisdiction_code=self.jurisdiction_code, identifier_body=self.identifier_body)


def derive_job_status(*, total: int, terminal: int, pending: int, touched: int) -> str:
    if terminal >= total and pending == 0:
        return JOB_COMPLETED
    if touched > 0:
        return JOB_RUNNING
    return JOB_QUEUED


SCHEMA_SQL = """
create table if not exists lookup_jobs (
  job_id uuid primary key,
  label text,
  status text not null default 'queued',
  total integer not null,
  done integer not null default 0,
  message text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists lookup_items (
  job_id uuid not null references lookup_jobs (job_id) on delete cascade,
  lookup_key text not null,
  position integer not null,
  input text not null,
  jurisdiction_code text not null,
  identifier_body text not null,
  state text not null default 'queued',
  attempts integer not null default 0,
  next_due_at timestamptz,
  last_error_code text,
  last_error_message text,
  result_payload jsonb,
  source text,
  updated_at timestamptz not null default now(),
  primary key (job_id, lookup_key)
);

create index if not exists lookup_items_due_idx
  on lookup_items (state, next_due_at nulls first, position);

create table if not exists lookup_cache (
  lookup_key text primary key,
  payload jsonb not null,
  recorded_at timestamptz not null default now()
);
"""

ITEM_COLUMNS = """
  i.job_id::text as job_id,
  i.lookup_key,
  i.position,
  i.input,
  i.jurisdiction_code,
  i.identifier_body,
  i.state,
  i.attempts,
  i.next_due_at,
  i.last_error_code,
  i.last_error_message,
  i.result_payload,
  i.source,
  i.updated_at
"""

JOB_COLUMNS = """
  job_id::text as job_id,
  label,
  status,
  total,
  done,
  message,
  created_at,
  updated_at
"""

REFRESH_JOB_SQL = f"""
with counts as (
  select
    count(*) filter (where state in ('done', 'error')) as terminal,
    count(*) filter (where state not in ('done', 'error')) as pending,
    count(*) filter (where state <> 'queued' or attempts > 0) as touched
  from lookup_items
  where job_id = $1::uuid
)
update lookup_jobs j
set
  done = c.terminal,
  status = case
    when c.terminal >= j.total and c.pending = 0 then 'completed'
    when c.touched > 0 then 'running'
    else 'queued'
  end,
  message = case
    when c.terminal >= j.total and c.pending = 0 then null
    else coalesce($2, j.message)
  end,
  updated_at = now()
from counts c
where j.job_id = $1::uuid
returning {JOB_COLUMNS}
"""


class PostgresJobRepository:
    """Durable job store backed by Postgres through an asyncpg pool.

    Every Item transition is one guarded single-row update plus a job
    counter refresh inside the same transaction.
    """

    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(self, items: list[NewItem], *, label: str | None = None) -> JobRecord:
        if not items:
            raise RepositoryConflictError("a job needs at least one item")
        pool = await self.get_pool()
        job_id = str(uuid4())
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into lookup_jobs (job_id, label, status, total)
                    values ($1::uuid, $2, 'queued', $3)
                    """,
                    job_id,
                    label,
                    len(items),
                )
                await conn.executemany(
                    """
                    insert into lookup_items (
                      job_id,
                      lookup_key,
                      position,
                      input,
                      jurisdiction_code,
                      identifier_body,
                      state,
                      result_payload,
                      source
                    )
                    values ($1::uuid, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
                    """,
                    [
                        (
                            job_id,
                            item.key.value,
                            position,
                            item.input,
                            item.key.jurisdiction_code,
                            item.key.identifier_body,
                            ITEM_DONE if item.cached_payload is not None else ITEM_QUEUED,
                            json.dumps(item.cached_payload) if item.cached_payload is not None else None,
                            "cache" if item.cached_payload is not None else None,
                        )
                        for position, item in enumerate(items)
                    ],
                )
                row = await conn.fetchrow(REFRESH_JOB_SQL, job_id, None)
        return self._job_row_to_record(row)

    async def claim_next_due_item(self, now: datetime) -> ItemRecord | None:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_item as (
                      select i.job_id, i.lookup_key
                      from lookup_items i
                      join lookup_jobs j on j.job_id = i.job_id
                      where i.state in ('queued', 'retry')
                        and (i.next_due_at is null or i.next_due_at <= $1)
                      order by i.next_due_at asc nulls first, j.created_at asc, i.position asc
                      limit 1
                      for update of i skip locked
                    )
                    update lookup_items i
                    set
                      state = 'processing',
                      next_due_at = null,
                      updated_at = now()
                    from next_item n
                    where i.job_id = n.job_id and i.lookup_key = n.lookup_key
                    returning {ITEM_COLUMNS}
                    """,
                    now,
                )
                if row is None:
                    return None
                await conn.fetchrow(REFRESH_JOB_SQL, row["job_id"], None)
        return self._item_row_to_record(row)

    async def mark_item_done(
        self,
        job_id: str,
        lookup_key: str,
        *,
        payload: dict[str, Any],
        source: str = "vies",
    ) -> ItemRecord:
        return await self._transition(
            job_id,
            lookup_key,
            """
            state = 'done',
            result_payload = $3::jsonb,
            source = $4,
            next_due_at = null,
            last_error_code = null,
            last_error_message = null
            """,
            [json.dumps(payload), source],
            message=None,
        )

    async def mark_item_retry(
        self,
        job_id: str,
        lookup_key: str,
        *,
        attempts: int,
        next_due_at: datetime,
        error_code: str,
        error_message: str,
    ) -> ItemRecord:
        return await self._transition(
            job_id,
            lookup_key,
            """
            state = 'retry',
            attempts = greatest(attempts, $3::int),
            next_due_at = $4,
            last_error_code = $5,
            last_error_message = $6
            """,
            [attempts, next_due_at, error_code, error_message[:1000]],
            message=f"retry scheduled: {error_code}",
        )

    async def mark_item_error(
        self,
        job_id: str,
        lookup_key: str,
        *,
        attempts: int,
        error_code: str,
        error_message: str,
    ) -> ItemRecord:
        return await self._transition(
            job_id,
            lookup_key,
            """
            state = 'error',
            attempts = greatest(attempts, $3::int),
            next_due_at = null,
            last_error_code = $4,
            last_error_message = $5
            """,
            [attempts, error_code, error_message[:1000]],
            message=None,
        )

    async def _transition(
        self,
        job_id: str,
        lookup_key: str,
        assignments: str,
        params: list[Any],
        *,
        message: str | None,
    ) -> ItemRecord:
        pool = await self.get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update lookup_items i
                        set
                          {assignments},
                          updated_at = now()
                        where i.job_id = $1::uuid
                          and i.lookup_key = $2
                          and i.state = 'processing'
                        returning {ITEM_COLUMNS}
                        """,
                        job_id,
                        lookup_key,
                        *params,
                    )
                    if row is None:
                        exists = await conn.fetchval(
                            "select 1 from lookup_items where job_id = $1::uuid and lookup_key = $2",
                            job_id,
                            lookup_key,
                        )
                        if not exists:
                            raise RepositoryNotFoundError("item not found")
                        raise RepositoryConflictError("item is not in processing state")
                    await conn.fetchrow(REFRESH_JOB_SQL, job_id, message)
        except (asyncpg.DataError, asyncpg.exceptions.InvalidTextRepresentationError) as exc:
            raise RepositoryNotFoundError("item not found") from exc
        return self._item_row_to_record(row)

    async def next_due_at(self) -> datetime | None:
        pool = await self.get_pool()
        return await pool.fetchval(
            """
            select min(coalesce(next_due_at, now()))
            from lookup_items
            where state in ('queued', 'retry')
            """
        )

    async def requeue_interrupted_items(self) -> int:
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    update lookup_items
                    set state = 'queued', next_due_at = null, updated_at = now()
                    where state = 'processing'
                    returning job_id::text as job_id
                    """
                )
                for job_id in {row["job_id"] for row in rows}:
                    await conn.fetchrow(REFRESH_JOB_SQL, job_id, "resumed after restart")
                return len(rows)

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self.get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from lookup_jobs where job_id = $1::uuid", job_id)
        except (asyncpg.DataError, asyncpg.exceptions.InvalidTextRepresentationError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_job_items(self, job_id: str) -> list[ItemRecord]:
        pool = await self.get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {ITEM_COLUMNS}
                from lookup_items i
                where i.job_id = $1::uuid
                order by i.position asc
                """,
                job_id,
            )
        except (asyncpg.DataError, asyncpg.exceptions.InvalidTextRepresentationError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return [self._item_row_to_record(row) for row in rows]

    async def purge_idle_jobs(self, *, idle_for: timedelta) -> int:
        pool = await self.get_pool()
        deleted = await pool.fetchval(
            """
            with purged as (
              delete from lookup_jobs j
              where j.updated_at <= now() - ($1::double precision * interval '1 second')
                and not exists (
                  select 1
                  from lookup_items i
                  where i.job_id = j.job_id
                    and i.state not in ('done', 'error')
                )
              returning 1
            )
            select count(*) from purged
            """,
            idle_for.total_seconds(),
        )
        return int(deleted or 0)

    async def get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("VATCHECK_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=15,
                )
                async with pool.acquire() as conn:
                    await conn.execute(SCHEMA_SQL)
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc
            self._pool = pool
            logger.info("database pool ready min_size=%s max_size=%s", self.min_pool_size, self.max_pool_size)
            return pool

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            job_id=row["job_id"],
            label=row["label"],
            status=row["status"],
            total=int(row["total"]),
            done=int(row["done"]),
            message=row["message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _item_row_to_record(row: asyncpg.Record) -> ItemRecord:
        payload = row["result_payload"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = None
        return ItemRecord(
            job_id=row["job_id"],
            lookup_key=row["lookup_key"],
            position=int(row["position"]),
            input=row["input"],
            jurisdiction_code=row["jurisdiction_code"],
            identifier_body=row["identifier_body"],
            state=row["state"],
            attempts=int(row["attempts"]),
            next_due_at=row["next_due_at"],
            last_error_code=row["last_error_code"],
            last_error_message=row["last_error_message"],
            result_payload=payload if isinstance(payload, dict) else None,
            source=row["source"],
            updated_at=row["updated_at"],
        )
