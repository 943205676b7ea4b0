from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from vatcheck.services.repository import (
    DUE_ITEM_STATES,
    ITEM_DONE,
    ITEM_ERROR,
    ITEM_PROCESSING,
    ITEM_QUEUED,
    ITEM_RETRY,
    TERMINAL_ITEM_STATES,
    ItemRecord,
    JobRecord,
    NewItem,
    RepositoryConflictError,
    RepositoryNotFoundError,
    derive_job_status,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore:
    """Process-local job store used when no database is configured.

    Same contract as the Postgres repository, minus durability across
    restarts. All mutations run without awaiting, so each one is atomic on
    the event loop.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self.jobs: dict[str, JobRecord] = {}
        self.items: dict[str, dict[str, ItemRecord]] = {}
        self._job_sequence: dict[str, int] = {}
        self._sequence = itertools.count()

    async def close(self) -> None:
        return None

    async def create_job(self, items: list[NewItem], *, label: str | None = None) -> JobRecord:
        if not items:
            raise RepositoryConflictError("a job needs at least one item")
        now = self._clock()
        job_id = str(uuid4())
        self.jobs[job_id] = JobRecord(
            job_id=job_id,
            label=label,
            status="queued",
            total=len(items),
            done=0,
            created_at=now,
            updated_at=now,
        )
        self._job_sequence[job_id] = next(self._sequence)
        self.items[job_id] = {}
        for position, item in enumerate(items):
            cached = item.cached_payload is not None
            self.items[job_id][item.key.value] = ItemRecord(
                job_id=job_id,
                lookup_key=item.key.value,
                position=position,
                input=item.input,
                jurisdiction_code=item.key.jurisdiction_code,
                identifier_body=item.key.identifier_body,
                state=ITEM_DONE if cached else ITEM_QUEUED,
                result_payload=dict(item.cached_payload) if cached else None,
                source="cache" if cached else None,
                updated_at=now,
            )
        return replace(self._refresh_job(job_id, message=None))

    async def claim_next_due_item(self, now: datetime) -> ItemRecord | None:
        due = [
            item
            for job_items in self.items.values()
            for item in job_items.values()
            if item.state in DUE_ITEM_STATES and (item.next_due_at is None or item.next_due_at <= now)
        ]
        if not due:
            return None
        item = min(
            due,
            key=lambda candidate: (
                candidate.next_due_at is not None,
                candidate.next_due_at or now,
                self._job_sequence[candidate.job_id],
                candidate.position,
            ),
        )
        item.state = ITEM_PROCESSING
        item.next_due_at = None
        item.updated_at = self._clock()
        self._refresh_job(item.job_id, message=None)
        return replace(item)

    async def mark_item_done(
        self,
        job_id: str,
        lookup_key: str,
        *,
        payload: dict[str, Any],
        source: str = "vies",
    ) -> ItemRecord:
        item = self._processing_item(job_id, lookup_key)
        item.state = ITEM_DONE
        item.result_payload = dict(payload)
        item.source = source
        item.next_due_at = None
        item.last_error_code = None
        item.last_error_message = None
        item.updated_at = self._clock()
        self._refresh_job(job_id, message=None)
        return replace(item)

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
        item = self._processing_item(job_id, lookup_key)
        item.state = ITEM_RETRY
        item.attempts = max(item.attempts, attempts)
        item.next_due_at = next_due_at
        item.last_error_code = error_code
        item.last_error_message = error_message[:1000]
        item.updated_at = self._clock()
        self._refresh_job(job_id, message=f"retry scheduled: {error_code}")
        return replace(item)

    async def mark_item_error(
        self,
        job_id: str,
        lookup_key: str,
        *,
        attempts: int,
        error_code: str,
        error_message: str,
    ) -> ItemRecord:
        item = self._processing_item(job_id, lookup_key)
        item.state = ITEM_ERROR
        item.attempts = max(item.attempts, attempts)
        item.next_due_at = None
        item.last_error_code = error_code
        item.last_error_message = error_message[:1000]
        item.updated_at = self._clock()
        self._refresh_job(job_id, message=None)
        return replace(item)

    async def next_due_at(self) -> datetime | None:
        now = self._clock()
        pending = [
            item.next_due_at or now
            for job_items in self.items.values()
            for item in job_items.values()
            if item.state in DUE_ITEM_STATES
        ]
        return min(pending) if pending else None

    async def requeue_interrupted_items(self) -> int:
        touched_jobs: set[str] = set()
        requeued = 0
        for job_id, job_items in self.items.items():
            for item in job_items.values():
                if item.state == ITEM_PROCESSING:
                    item.state = ITEM_QUEUED
                    item.next_due_at = None
                    item.updated_at = self._clock()
                    touched_jobs.add(job_id)
                    requeued += 1
        for job_id in touched_jobs:
            self._refresh_job(job_id, message="resumed after restart")
        return requeued

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return replace(job)

    async def list_job_items(self, job_id: str) -> list[ItemRecord]:
        if job_id not in self.items:
            raise RepositoryNotFoundError("job not found")
        return [replace(item) for item in sorted(self.items[job_id].values(), key=lambda item: item.position)]

    async def purge_idle_jobs(self, *, idle_for: timedelta) -> int:
        cutoff = self._clock() - idle_for
        purged = [
            job_id
            for job_id, job in self.jobs.items()
            if job.updated_at <= cutoff
            and all(item.state in TERMINAL_ITEM_STATES for item in self.items[job_id].values())
        ]
        for job_id in purged:
            del self.jobs[job_id]
            del self.items[job_id]
            del self._job_sequence[job_id]
        return len(purged)

    def _processing_item(self, job_id: str, lookup_key: str) -> ItemRecord:
        item = self.items.get(job_id, {}).get(lookup_key)
        if item is None:
            raise RepositoryNotFoundError("item not found")
        if item.state != ITEM_PROCESSING:
            raise RepositoryConflictError("item is not in processing state")
        return item

    def _refresh_job(self, job_id: str, *, message: str | None) -> JobRecord:
        job = self.jobs[job_id]
        job_items = self.items[job_id].values()
        terminal = sum(1 for item in job_items if item.state in TERMINAL_ITEM_STATES)
        pending = len(job_items) - terminal
        touched = sum(1 for item in job_items if item.state != ITEM_QUEUED or item.attempts > 0)
        job.done = terminal
        job.status = derive_job_status(total=job.total, terminal=terminal, pending=pending, touched=touched)
        if job.status == "completed":
            job.message = None
        elif message is not None:
            job.message = message
        job.updated_at = self._clock()
        return job
