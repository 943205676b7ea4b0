from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from vatcheck.core.config import Settings
from vatcheck.core.keys import normalize_jurisdiction
from vatcheck.jobs.fast_lane import FastLaneExecutor
from vatcheck.jobs.housekeeping import Housekeeper
from vatcheck.jobs.rate_limiter import RateLimiter
from vatcheck.jobs.retry import RetryPolicy
from vatcheck.jobs.slow_lane import SlowLaneWorker
from vatcheck.services.cache import InMemoryResultCache, PostgresResultCache
from vatcheck.services.repository import PostgresJobRepository
from vatcheck.services.status_gate import UpstreamStatusGate
from vatcheck.services.store import InMemoryJobStore
from vatcheck.services.vies import ViesClient

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LookupServices:
    """Every piece of shared mutable state for one process, wired once."""

    settings: Settings
    repository: PostgresJobRepository | InMemoryJobStore
    cache: InMemoryResultCache | PostgresResultCache
    client: ViesClient
    status_gate: UpstreamStatusGate
    fast_lane: FastLaneExecutor
    slow_lane: SlowLaneWorker
    housekeeper: Housekeeper
    slow_lane_jurisdictions: frozenset[str]

    def is_slow_lane(self, jurisdiction_code: str) -> bool:
        return jurisdiction_code in self.slow_lane_jurisdictions

    async def start(self) -> None:
        await self.slow_lane.start()
        self.housekeeper.start()

    async def close(self) -> None:
        await self.housekeeper.stop()
        await self.slow_lane.stop()
        await self.client.aclose()
        await self.cache.close()
        await self.repository.close()


def build_services(settings: Settings, *, client: ViesClient | None = None) -> LookupServices:
    repository: PostgresJobRepository | InMemoryJobStore
    cache: InMemoryResultCache | PostgresResultCache
    if settings.database_url:
        postgres = PostgresJobRepository(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
        repository = postgres
        cache = PostgresResultCache(postgres.get_pool, ttl_seconds=settings.cache_ttl_seconds)
    else:
        logger.warning("VATCHECK_DATABASE_URL not set; slow lane jobs will not survive a restart")
        repository = InMemoryJobStore()
        cache = InMemoryResultCache(ttl_seconds=settings.cache_ttl_seconds)

    if client is None:
        client = ViesClient(
            settings.vies_base_url,
            timeout_seconds=settings.vies_timeout_seconds,
            status_timeout_seconds=settings.vies_status_timeout_seconds,
            requester_member_state=settings.requester_member_state,
            requester_vat_number=settings.requester_vat_number,
        )

    status_gate = UpstreamStatusGate(client, ttl_seconds=settings.status_ttl_seconds)
    fast_lane = FastLaneExecutor(
        client=client,
        cache=cache,
        limiter=RateLimiter(
            global_gap_seconds=settings.fast_lane_global_gap_seconds,
            partition_gap_seconds=settings.fast_lane_partition_gap_seconds,
            partition_gap_overrides=settings.fast_lane_partition_gap_overrides,
        ),
        retry_policy=RetryPolicy(
            max_attempts=settings.fast_lane_max_attempts,
            default_ladder=settings.fast_lane_backoff_seconds,
            congestion_ladder=settings.fast_lane_congestion_backoff_seconds,
            jitter_seconds=settings.fast_lane_jitter_seconds,
        ),
        worker_count=settings.fast_lane_workers,
    )
    slow_lane = SlowLaneWorker(
        repository=repository,
        client=client,
        cache=cache,
        status_gate=status_gate,
        retry_policy=RetryPolicy(
            max_attempts=settings.slow_lane_max_attempts,
            default_ladder=settings.slow_lane_backoff_seconds,
            congestion_ladder=settings.slow_lane_congestion_backoff_seconds,
            jitter_seconds=settings.slow_lane_jitter_seconds,
        ),
        min_call_gap_seconds=settings.slow_lane_min_call_gap_seconds,
        congestion_cooldown_seconds=settings.slow_lane_congestion_cooldown_seconds,
        unavailable_delay_seconds=settings.slow_lane_unavailable_delay_seconds,
    )
    housekeeper = Housekeeper(
        repository=repository,
        cache=cache,
        job_retention=timedelta(hours=settings.job_retention_hours),
        interval_seconds=settings.housekeeping_interval_seconds,
    )
    return LookupServices(
        settings=settings,
        repository=repository,
        cache=cache,
        client=client,
        status_gate=status_gate,
        fast_lane=fast_lane,
        slow_lane=slow_lane,
        housekeeper=housekeeper,
        slow_lane_jurisdictions=frozenset(normalize_jurisdiction(code) for code in settings.slow_lane_jurisdictions),
    )
