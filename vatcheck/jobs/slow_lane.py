"""Single active drain loop for the especially rate-limited jurisdictions.

The job store is the only source of truth: the loop claims one due item at
a time, moves it to a terminal or retry state, and when nothing is due
sleeps until the earliest ``next_due_at`` or until :meth:`notify` is called.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from opentelemetry import trace

from vatcheck.core.telemetry import lane_span, lookup_span
from vatcheck.jobs.retry import (
    NETWORK_ERROR_CODE,
    STATUS_GATE_UNAVAILABLE_CODE,
    ErrorClass,
    RetryDecision,
    RetryPolicy,
    classify_upstream_error,
)
from vatcheck.services.cache import InMemoryResultCache, PostgresResultCache
from vatcheck.services.repository import ItemRecord, PostgresJobRepository
from vatcheck.services.rows import lookup_payload
from vatcheck.services.status_gate import UpstreamStatusGate
from vatcheck.services.store import InMemoryJobStore
from vatcheck.services.vies import UpstreamResult, ViesClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unexpected_failure(exc: Exception) -> UpstreamResult:
    return UpstreamResult(
        ok=False,
        status_code=0,
        error_code=NETWORK_ERROR_CODE,
        error_message=f"{type(exc).__name__}: {exc}",
    )


class SlowLaneWorker:
    def __init__(
        self,
        *,
        repository: PostgresJobRepository | InMemoryJobStore,
        client: ViesClient,
        cache: InMemoryResultCache | PostgresResultCache,
        status_gate: UpstreamStatusGate,
        retry_policy: RetryPolicy,
        min_call_gap_seconds: float = 2.0,
        congestion_cooldown_seconds: float = 60.0,
        unavailable_delay_seconds: float = 60.0,
        max_idle_backoff_seconds: float = 15.0,
        now: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._client = client
        self._cache = cache
        self._status_gate = status_gate
        self._retry_policy = retry_policy
        self.min_call_gap_seconds = max(0.0, min_call_gap_seconds)
        self.congestion_cooldown_seconds = max(0.0, congestion_cooldown_seconds)
        self.unavailable_delay_seconds = max(0.0, unavailable_delay_seconds)
        self.max_idle_backoff_seconds = max_idle_backoff_seconds
        self._now = now
        self._monotonic = monotonic
        self._sleep = sleep
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._last_call_at: float | None = None
        self._cooldown_until = 0.0

    @property
    def cooldown_until(self) -> float:
        return self._cooldown_until

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="slow-lane-worker")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def notify(self) -> None:
        """Wake the drain loop, e.g. after a new job was registered."""
        self._wakeup.set()

    async def _run(self) -> None:
        await self._recover_interrupted()
        backoff = 1.0
        while True:
            self._wakeup.clear()
            try:
                await self.drain()
                timeout = await self._seconds_until_next_due()
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                timeout = min(backoff * (2.0 + jitter), self.max_idle_backoff_seconds)
                logger.exception("slow lane drain failed: %s; retry in %.1fs", exc, timeout)
                backoff = timeout
                await self._recover_interrupted()

            if timeout is None:
                await self._wakeup.wait()
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    async def _recover_interrupted(self) -> None:
        try:
            requeued = await self._repository.requeue_interrupted_items()
        except Exception:
            logger.exception("could not requeue interrupted slow lane items")
            return
        if requeued:
            logger.info("requeued interrupted slow lane items: %s", requeued)

    async def _seconds_until_next_due(self) -> float | None:
        next_due_at = await self._repository.next_due_at()
        if next_due_at is None:
            return None
        return max(0.0, (next_due_at - self._now()).total_seconds())

    async def drain(self) -> int:
        """Process due items until none is left; returns how many were handled."""
        handled = 0
        with lane_span("slow_lane.drain") as span:
            while True:
                await self._honor_cooldown()
                item = await self._repository.claim_next_due_item(self._now())
                if item is None:
                    break
                await self.process_item(item)
                handled += 1
            span.set_attribute("slow_lane.handled", handled)
        return handled

    async def process_item(self, item: ItemRecord) -> ItemRecord:
        key = item.key
        with lookup_span("slow_lane.process_item", key, attempts=item.attempts, job_id=item.job_id) as span:
            cached = await self._cache.get(key.value)
            if cached is not None:
                return await self._repository.mark_item_done(item.job_id, item.lookup_key, payload=cached, source="cache")

            try:
                available = await self._status_gate.is_available(key.jurisdiction_code)
            except Exception as exc:
                logger.exception("status gate check raised key=%s", key.value)
                return await self._record_failure(item, _unexpected_failure(exc), span)

            if not available:
                attempts = item.attempts + 1
                decision = self._retry_policy.decide(
                    ErrorClass.UPSTREAM_UNAVAILABLE,
                    STATUS_GATE_UNAVAILABLE_CODE,
                    attempts,
                )
                if decision.retry:
                    decision = RetryDecision(
                        retry=True,
                        attempts=attempts,
                        delay_seconds=self.unavailable_delay_seconds,
                        error_class=decision.error_class,
                        error_code=decision.error_code,
                    )
                return await self._apply_failure(
                    item,
                    decision,
                    error_message=f"{key.jurisdiction_code} reported unavailable by check-status",
                )

            await self._wait_for_call_slot()
            try:
                result = await self._client.check_vat(key)
            except Exception as exc:
                logger.exception("slow lane upstream call raised key=%s", key.value)
                result = _unexpected_failure(exc)
            finally:
                self._last_call_at = self._monotonic()

            if result.ok:
                payload = lookup_payload(result.payload, key)
                await self._cache.put(key.value, payload)
                logger.info("slow lane lookup done key=%s job_id=%s", key.value, item.job_id)
                return await self._repository.mark_item_done(item.job_id, item.lookup_key, payload=payload)

            return await self._record_failure(item, result, span)

    async def _record_failure(self, item: ItemRecord, result: UpstreamResult, span: trace.Span) -> ItemRecord:
        attempts = item.attempts + 1
        error_code = result.error_code or f"HTTP_{result.status_code}"
        error_class = classify_upstream_error(error_code, result.status_code)
        if error_class is ErrorClass.UPSTREAM_CONGESTION:
            self._raise_cooldown()
        span.set_attribute("vat.error_code", error_code)
        decision = self._retry_policy.decide(error_class, error_code, attempts)
        return await self._apply_failure(item, decision, error_message=result.error_message or error_code)

    async def _apply_failure(self, item: ItemRecord, decision: RetryDecision, *, error_message: str) -> ItemRecord:
        if decision.retry:
            next_due_at = self._now() + timedelta(seconds=decision.delay_seconds)
            logger.info(
                "slow lane retry key=%s code=%s attempts=%s next_due_at=%s",
                item.lookup_key,
                decision.error_code,
                decision.attempts,
                next_due_at.isoformat(),
            )
            return await self._repository.mark_item_retry(
                item.job_id,
                item.lookup_key,
                attempts=decision.attempts,
                next_due_at=next_due_at,
                error_code=decision.error_code,
                error_message=error_message,
            )

        if decision.error_class is ErrorClass.RETRY_BUDGET_EXHAUSTED:
            error_message = f"gave up after {decision.attempts} attempts; last error: {error_message}"
        logger.warning(
            "slow lane lookup failed key=%s code=%s attempts=%s",
            item.lookup_key,
            decision.error_code,
            decision.attempts,
        )
        return await self._repository.mark_item_error(
            item.job_id,
            item.lookup_key,
            attempts=decision.attempts,
            error_code=decision.error_code,
            error_message=error_message,
        )

    def _raise_cooldown(self) -> None:
        until = self._monotonic() + self.congestion_cooldown_seconds
        if until > self._cooldown_until:
            self._cooldown_until = until
            logger.warning("slow lane cooling down for %.1fs after congestion", self.congestion_cooldown_seconds)

    async def _honor_cooldown(self) -> None:
        remaining = self._cooldown_until - self._monotonic()
        if remaining > 0:
            await self._sleep(remaining)

    async def _wait_for_call_slot(self) -> None:
        if self._last_call_at is None:
            return
        remaining = self._last_call_at + self.min_call_gap_seconds - self._monotonic()
        if remaining > 0:
            await self._sleep(remaining)
