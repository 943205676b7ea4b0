from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from vatcheck.core.keys import normalize_jurisdiction
from vatcheck.services.vies import UpstreamStatusError, ViesClient

logger = logging.getLogger(__name__)

AVAILABLE = "Available"


class UpstreamStatusGate:
    """Short-lived cache of the upstream's per-jurisdiction availability.

    Unknown jurisdictions and a missing snapshot both count as available.
    A failed refresh keeps serving the last good snapshot.
    """

    def __init__(
        self,
        client: ViesClient,
        *,
        ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.ttl_seconds = max(0.0, ttl_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._snapshot: list[dict[str, str]] | None = None
        self._fetched_at: float | None = None

    def _is_fresh(self) -> bool:
        return self._fetched_at is not None and self._clock() - self._fetched_at < self.ttl_seconds

    async def snapshot(self) -> list[dict[str, str]] | None:
        if self._is_fresh():
            return self._snapshot
        async with self._lock:
            if self._is_fresh():
                return self._snapshot
            try:
                self._snapshot = await self._client.check_status()
                self._fetched_at = self._clock()
            except UpstreamStatusError as exc:
                logger.warning("status refresh failed, keeping last snapshot: %s", exc)
                # Failed refreshes wait out the same interval before the next attempt.
                self._fetched_at = self._clock()
            return self._snapshot

    async def is_available(self, jurisdiction_code: str) -> bool:
        snapshot = await self.snapshot()
        if not snapshot:
            return True
        code = normalize_jurisdiction(jurisdiction_code)
        entry = next((item for item in snapshot if normalize_jurisdiction(item["countryCode"]) == code), None)
        return entry is None or entry["availability"] == AVAILABLE
