from __future__ import annotations

import asyncio

from vatcheck.services.status_gate import UpstreamStatusGate
from vatcheck.services.vies import UpstreamStatusError


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeStatusClient:
    def __init__(self, responses: list[list[dict[str, str]] | Exception]) -> None:
        self.responses = list(responses)
        self.calls = 0

    async def check_status(self) -> list[dict[str, str]]:
        self.calls += 1
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_gate_reports_unavailable_jurisdiction_and_fails_open_for_unknown() -> None:
    client = FakeStatusClient(
        [
            [
                {"countryCode": "FR", "availability": "Unavailable"},
                {"countryCode": "EL", "availability": "Available"},
            ]
        ]
    )
    gate = UpstreamStatusGate(client, ttl_seconds=30, clock=FakeClock())

    async def run() -> tuple[bool, bool, bool]:
        return await gate.is_available("FR"), await gate.is_available("GR"), await gate.is_available("NL")

    assert asyncio.run(run()) == (False, True, True)
    assert client.calls == 1


def test_gate_refreshes_after_ttl() -> None:
    clock = FakeClock()
    client = FakeStatusClient(
        [
            [{"countryCode": "FR", "availability": "Unavailable"}],
            [{"countryCode": "FR", "availability": "Available"}],
        ]
    )
    gate = UpstreamStatusGate(client, ttl_seconds=30, clock=clock)

    async def run() -> tuple[bool, bool]:
        first = await gate.is_available("FR")
        clock.now += 31
        return first, await gate.is_available("FR")

    assert asyncio.run(run()) == (False, True)
    assert client.calls == 2


def test_gate_keeps_last_snapshot_when_refresh_fails() -> None:
    clock = FakeClock()
    client = FakeStatusClient(
        [
            [{"countryCode": "FR", "availability": "Unavailable"}],
            UpstreamStatusError("check-status failed"),
        ]
    )
    gate = UpstreamStatusGate(client, ttl_seconds=30, clock=clock)

    async def run() -> bool:
        await gate.snapshot()
        clock.now += 31
        return await gate.is_available("FR")

    assert asyncio.run(run()) is False


def test_gate_without_any_snapshot_fails_open() -> None:
    client = FakeStatusClient([UpstreamStatusError("down"), UpstreamStatusError("still down")])
    gate = UpstreamStatusGate(client, ttl_seconds=30, clock=FakeClock())

    async def run() -> tuple[list | None, bool]:
        return await gate.snapshot(), await gate.is_available("FR")

    assert asyncio.run(run()) == (None, True)
    assert client.calls == 1


def test_gate_retries_failed_refresh_only_after_ttl() -> None:
    clock = FakeClock()
    client = FakeStatusClient(
        [
            UpstreamStatusError("down"),
            [{"countryCode": "FR", "availability": "Unavailable"}],
        ]
    )
    gate = UpstreamStatusGate(client, ttl_seconds=30, clock=clock)

    async def run() -> list[bool]:
        seen = [await gate.is_available("FR") for _ in range(5)]
        clock.now += 31
        seen.append(await gate.is_available("FR"))
        return seen

    assert asyncio.run(run()) == [True, True, True, True, True, False]
    assert client.calls == 2
