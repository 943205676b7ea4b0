from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from vatcheck.core.config import Settings
from vatcheck.main import create_app
from vatcheck.services.vies import ViesClient

FR_LOOKUP_DELAY_SECONDS = 0.3


async def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/check-status"):
        return httpx.Response(
            200,
            json={
                "countries": [
                    {"countryCode": "FR", "availability": "Available"},
                    {"countryCode": "NL", "availability": "Available"},
                ]
            },
        )
    body = json.loads(request.content)
    if body["countryCode"] == "FR":
        await asyncio.sleep(FR_LOOKUP_DELAY_SECONDS)
    if body["vatNumber"].endswith("000"):
        return httpx.Response(200, json={"valid": False, "name": "---", "address": "---"})
    return httpx.Response(
        200,
        json={
            "valid": True,
            "countryCode": body["countryCode"],
            "vatNumber": body["vatNumber"],
            "name": f"Company {body['vatNumber']}",
            "address": "1 Main Street",
            "requestIdentifier": "WAPIAAAA",
        },
    )


@pytest.fixture
def api_client():
    settings = Settings(
        otel_enabled=False,
        database_url=None,
        slow_lane_min_call_gap_seconds=0.0,
        fast_lane_global_gap_seconds=0.0,
        fast_lane_partition_gap_seconds=0.0,
    )
    upstream = ViesClient(
        "https://vies.test/rest-api",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
    )
    with TestClient(create_app(settings, client=upstream)) as client:
        yield client


def _wait_for_completion(client: TestClient, job_id: str, path: str = "/api/jobs") -> dict:
    body: dict = {}
    for _ in range(200):
        response = client.get(f"{path}/{job_id}")
        assert response.status_code == 200
        body = response.json()
        if body["job"]["status"] == "completed":
            return body
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not complete: {body}")


def test_fast_lane_batch_deduplicates_and_keeps_input_order(api_client: TestClient) -> None:
    response = api_client.post(
        "/api/validate-batch",
        json={
            "vat_numbers": ["NL123456789B01", "de 111 000", "nl 1234.56789 b01", "x", "DE"],
            "case_ref": " case-42 ",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["job_id"] is None
    assert body["duplicates_ignored"] == 1
    assert body["count"] == 4
    results = body["results"]
    assert [row["input"] for row in results] == ["NL123456789B01", "de 111 000", "x", "DE"]
    assert results[0]["state"] == "valid"
    assert results[0]["name"] == "Company 123456789B01"
    assert results[0]["details"] == "requestIdentifier=WAPIAAAA"
    assert results[0]["case_ref"] == "case-42"
    assert results[1]["state"] == "invalid"
    assert results[1]["name"] == ""
    assert results[2]["error_code"] == "MALFORMED_INPUT"
    assert results[2]["error_message"] == "empty_or_too_short"
    assert results[3]["error_message"] == "missing_identifier_body"


def test_slow_lane_batch_is_processed_in_background(api_client: TestClient) -> None:
    response = api_client.post("/api/validate-batch", json={"vat_numbers": ["FR 12 345678901", "NL999999999B01"]})

    assert response.status_code == 200
    body = response.json()
    job_id = body["job_id"]
    assert job_id
    fr_row, nl_row = body["results"]
    assert fr_row["lookup_key"] == "FR:12345678901"
    assert fr_row["job_id"] == job_id
    assert fr_row["state"] in {"queued", "processing", "valid"}
    assert nl_row["state"] == "valid"

    polled = api_client.get(f"/api/jobs/{job_id}")
    assert polled.status_code == 200
    assert polled.json()["job"]["status"] in {"queued", "running"}
    assert polled.json()["job"]["done"] == 0

    progress = _wait_for_completion(api_client, job_id)
    assert progress["job"]["done"] == progress["job"]["total"] == 1
    assert progress["results"][0]["valid"] is True
    assert progress["results"][0]["source"] == "vies"

    alias = api_client.get(f"/api/fr-job/{job_id}")
    assert alias.status_code == 200
    assert alias.json()["job"]["job_id"] == job_id


def test_resubmitted_slow_lane_key_is_served_from_cache(api_client: TestClient) -> None:
    first = api_client.post("/api/validate-batch", json={"vat_numbers": ["FR12345678901"]}).json()
    _wait_for_completion(api_client, first["job_id"])

    second = api_client.post("/api/validate-batch", json={"vat_numbers": ["FR12345678901"]}).json()

    assert second["results"][0]["state"] == "valid"
    assert second["results"][0]["source"] == "cache"
    job = api_client.get(f"/api/jobs/{second['job_id']}").json()["job"]
    assert job["status"] == "completed"


def test_unknown_job_returns_404(api_client: TestClient) -> None:
    response = api_client.get("/api/jobs/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"detail": "job not found"}


def test_vies_status_passes_snapshot_through(api_client: TestClient) -> None:
    response = api_client.get("/api/vies-status")
    assert response.status_code == 200
    assert {"countryCode": "FR", "availability": "Available"} in response.json()["countries"]
