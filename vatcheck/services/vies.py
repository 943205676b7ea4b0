from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from vatcheck.core.keys import LookupKey, canonicalize_line
from vatcheck.jobs.retry import NETWORK_ERROR_CODE, TIMEOUT_CODE

logger = logging.getLogger(__name__)

USER_AGENT = "vatcheck-vies-client/1.0"


class UpstreamStatusError(RuntimeError):
    """Raised when the availability snapshot cannot be fetched."""


@dataclass(slots=True)
class UpstreamResult:
    ok: bool
    status_code: int
    payload: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str = ""


class ViesClient:
    """Thin async client for the VIES REST API.

    Transport failures never raise: they come back as a failed
    :class:`UpstreamResult` with status ``0`` so callers can classify them
    like any other upstream error.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 20.0,
        status_timeout_seconds: float = 10.0,
        requester_member_state: str | None = None,
        requester_vat_number: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.status_timeout_seconds = status_timeout_seconds
        self.requester_member_state = (requester_member_state or "").strip().upper() or None
        self.requester_number = _strip_requester_prefix(requester_vat_number)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.headers = {"Accept": "application/json", "User-Agent": USER_AGENT}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def check_vat(self, key: LookupKey) -> UpstreamResult:
        body: dict[str, Any] = {"countryCode": key.jurisdiction_code, "vatNumber": key.identifier_body}
        if self.requester_member_state and self.requester_number:
            body["requesterMemberStateCode"] = self.requester_member_state
            body["requesterNumber"] = self.requester_number

        try:
            response = await self._client.post(
                f"{self.base_url}/check-vat-number",
                json=body,
                headers=self.headers,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            return UpstreamResult(ok=False, status_code=0, error_code=TIMEOUT_CODE, error_message=str(exc) or "timeout")
        except httpx.HTTPError as exc:
            return UpstreamResult(
                ok=False,
                status_code=0,
                error_code=NETWORK_ERROR_CODE,
                error_message=f"{type(exc).__name__}: {exc}",
            )

        data = _decode_json(response)
        status_code = int(response.status_code)
        if _is_common_response(data) and data.get("actionSucceed") is False:
            return UpstreamResult(
                ok=False,
                status_code=status_code,
                payload=data,
                error_code=_extract_error_code(data) or f"HTTP_{status_code}",
                error_message=_extract_error_message(data),
            )
        if not response.is_success:
            return UpstreamResult(
                ok=False,
                status_code=status_code,
                payload=data,
                error_code=_extract_error_code(data) or f"HTTP_{status_code}",
                error_message=_extract_error_message(data) or json.dumps(data)[:1000],
            )
        return UpstreamResult(ok=True, status_code=status_code, payload=data)

    async def check_status(self) -> list[dict[str, str]]:
        try:
            response = await self._client.get(
                f"{self.base_url}/check-status",
                headers=self.headers,
                timeout=self.status_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamStatusError(f"check-status failed: {exc}") from exc

        data = _decode_json(response)
        countries = data.get("countries")
        if not isinstance(countries, list):
            raise UpstreamStatusError("check-status returned no countries list")
        snapshot: list[dict[str, str]] = []
        for entry in countries:
            if not isinstance(entry, dict):
                continue
            code = entry.get("countryCode")
            availability = entry.get("availability")
            if isinstance(code, str) and isinstance(availability, str):
                snapshot.append({"countryCode": code.strip().upper(), "availability": availability})
        return snapshot


def _decode_json(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"raw": response.text[:1000]}
    return data if isinstance(data, dict) else {"raw": data}


def _is_common_response(data: dict[str, Any]) -> bool:
    return "actionSucceed" in data and "errorWrappers" in data


def _extract_error_code(data: dict[str, Any]) -> str | None:
    wrappers = data.get("errorWrappers")
    if isinstance(wrappers, list) and wrappers and isinstance(wrappers[0], dict):
        code = wrappers[0].get("error")
        return code if isinstance(code, str) and code else None
    code = data.get("error")
    return code if isinstance(code, str) and code else None


def _extract_error_message(data: dict[str, Any]) -> str:
    wrappers = data.get("errorWrappers")
    if isinstance(wrappers, list) and wrappers and isinstance(wrappers[0], dict):
        message = wrappers[0].get("message")
        return message if isinstance(message, str) else ""
    message = data.get("message")
    return message if isinstance(message, str) else ""


def _strip_requester_prefix(value: str | None) -> str | None:
    compact = canonicalize_line(value)
    if len(compact) > 2 and compact[:2].isalpha():
        compact = compact[2:]
    return compact or None
