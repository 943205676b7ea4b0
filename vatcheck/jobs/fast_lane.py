from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from vatcheck.core.keys import ParsedLine
from vatcheck.core.telemetry import lookup_span
from vatcheck.jobs.rate_limiter import RateLimiter
from vatcheck.jobs.retry import RetryPolicy, classify_upstream_error
from vatcheck.schemas.batches import ResultRow
from vatcheck.services.cache import InMemoryResultCache, PostgresResultCache
from vatcheck.services.rows import lookup_payload, row_from_error, row_from_payload
from vatcheck.services.vies import ViesClient

logger = logging.getLogger(__name__)


class FastLaneExecutor:
    """Synchronous, bounded-retry lookups for the less restricted jurisdictions.

    Items are grouped per jurisdiction. A fixed pool of workers pulls whole
    partitions off a queue, so one jurisdiction is only ever served by one
    worker at a time and its items run strictly in sequence.
    """

    def __init__(
        self,
        *,
        client: ViesClient,
        cache: InMemoryResultCache | PostgresResultCache,
        limiter: RateLimiter,
        retry_policy: RetryPolicy,
        worker_count: int = 6,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._cache = cache
        self._limiter = limiter
        self._retry_policy = retry_policy
        self.worker_count = max(1, worker_count)
        self._sleep = sleep

    async def run(self, lines: Sequence[ParsedLine], *, case_ref: str | None = None) -> list[ResultRow]:
        if not lines:
            return []

        partitions: dict[str, list[int]] = {}
        for index, line in enumerate(lines):
            partitions.setdefault(line.key.jurisdiction_code, []).append(index)

        queue: asyncio.Queue[tuple[str, list[int]]] = asyncio.Queue()
        for partition in partitions.items():
            queue.put_nowait(partition)

        results: list[ResultRow | None] = [None] * len(lines)

        async def worker() -> None:
            while True:
                try:
                    jurisdiction_code, indexes = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                for index in indexes:
                    results[index] = await self.lookup(lines[index], case_ref=case_ref)
                logger.debug("fast lane partition drained jurisdiction=%s items=%s", jurisdiction_code, len(indexes))

        await asyncio.gather(*(worker() for _ in range(min(self.worker_count, len(partitions)))))
        return [row for row in results if row is not None]

    async def lookup(self, line: ParsedLine, *, case_ref: str | None = None) -> ResultRow:
        key = line.key
        cached = await self._cache.get(key.value)
        if cached is not None:
            return row_from_payload(line.input, key, cached, source="cache", case_ref=case_ref)

        with lookup_span("fast_lane.lookup", key) as span:
            attempts = 0
            while True:
                await self._limiter.acquire(key.jurisdiction_code)
                result = await self._client.check_vat(key)
                if result.ok:
                    payload = lookup_payload(result.payload, key)
                    await self._cache.put(key.value, payload)
                    span.set_attribute("vat.attempts", attempts + 1)
                    return row_from_payload(line.input, key, payload, source="vies", case_ref=case_ref)

                attempts += 1
                error_code = result.error_code or f"HTTP_{result.status_code}"
                error_class = classify_upstream_error(error_code, result.status_code)
                decision = self._retry_policy.decide(error_class, error_code, attempts)
                if not decision.retry:
                    logger.info(
                        "fast lane lookup failed key=%s code=%s class=%s attempts=%s",
                        key.value,
                        decision.error_code,
                        decision.error_class.value,
                        attempts,
                    )
                    span.set_attribute("vat.error_code", decision.error_code)
                    message = result.error_message or error_code
                    if decision.error_code != error_code:
                        message = f"{error_code} after {attempts} attempts: {message}"
                    return row_from_error(
                        line.input,
                        key,
                        error_code=decision.error_code,
                        error_message=message,
                        attempt=attempts,
                        case_ref=case_ref,
                    )

                logger.info(
                    "fast lane retry key=%s code=%s attempt=%s delay=%.2fs",
                    key.value,
                    error_code,
                    attempts,
                    decision.delay_seconds,
                )
                await self._sleep(decision.delay_seconds)
