from __future__ import annotations

import logging
from collections.abc import Sequence

from vatcheck.core.keys import MalformedInputError, ParsedLine, parse_lookup_line
from vatcheck.schemas.batches import BatchResponse, ResultRow
from vatcheck.schemas.jobs import JobOut, JobPollResponse
from vatcheck.services.repository import NewItem
from vatcheck.services.rows import row_from_item, row_from_malformed
from vatcheck.services.runtime import LookupServices

logger = logging.getLogger(__name__)


async def submit_batch(
    services: LookupServices,
    raw_lines: Sequence[str],
    *,
    case_ref: str | None = None,
) -> BatchResponse:
    """Validate a batch: fast lane inline, slow lane as a durable job.

    The response carries one row per distinct lookup key plus one row per
    malformed line, in input order. Later duplicates of a key are dropped.
    """
    label = (case_ref or "").strip() or None
    slots: list[ResultRow | ParsedLine] = []
    seen: set[str] = set()
    duplicates = 0
    fast: list[ParsedLine] = []
    slow: list[ParsedLine] = []

    for raw in raw_lines:
        try:
            parsed = parse_lookup_line(raw)
        except MalformedInputError as exc:
            slots.append(row_from_malformed(exc.raw, exc, case_ref=label))
            continue
        if parsed.key.value in seen:
            duplicates += 1
            continue
        seen.add(parsed.key.value)
        slots.append(parsed)
        (slow if services.is_slow_lane(parsed.key.jurisdiction_code) else fast).append(parsed)

    rows_by_key: dict[str, ResultRow] = {}
    job_id: str | None = None

    if slow:
        new_items = [
            NewItem(input=line.input, key=line.key, cached_payload=await services.cache.get(line.key.value))
            for line in slow
        ]
        job = await services.repository.create_job(new_items, label=label)
        job_id = job.job_id
        for item in await services.repository.list_job_items(job.job_id):
            rows_by_key[item.lookup_key] = row_from_item(item, case_ref=label)
        services.slow_lane.notify()
        logger.info("registered slow lane job job_id=%s items=%s status=%s", job.job_id, job.total, job.status)

    for line, row in zip(fast, await services.fast_lane.run(fast, case_ref=label)):
        rows_by_key[line.key.value] = row

    results = [slot if isinstance(slot, ResultRow) else rows_by_key[slot.key.value] for slot in slots]
    return BatchResponse(count=len(results), job_id=job_id, duplicates_ignored=duplicates, results=results)


async def get_job_progress(services: LookupServices, job_id: str) -> JobPollResponse:
    job = await services.repository.get_job(job_id)
    items = await services.repository.list_job_items(job_id)
    return JobPollResponse(
        job=JobOut(
            job_id=job.job_id,
            status=job.status,
            total=job.total,
            done=job.done,
            created_at=job.created_at,
            updated_at=job.updated_at,
            message=job.message,
            label=job.label,
        ),
        results=[row_from_item(item, case_ref=job.label) for item in items],
    )
