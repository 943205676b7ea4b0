from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from vatcheck.core.keys import LookupKey, MalformedInputError
from vatcheck.jobs.retry import MALFORMED_INPUT_CODE
from vatcheck.schemas.batches import ResultRow
from vatcheck.services.repository import (
    ITEM_DONE,
    ITEM_ERROR,
    ItemRecord,
)

PLACEHOLDER_VALUES = {"---", "--", "-"}
MAX_DETAIL_LENGTH = 1000


def lookup_payload(data: dict[str, Any], key: LookupKey, *, checked_at: datetime | None = None) -> dict[str, Any]:
    """Reduce a successful upstream answer to the payload that gets cached."""
    checked = checked_at or datetime.now(timezone.utc)
    return {
        "valid": bool(data.get("valid")),
        "name": _clean_text(data.get("name")),
        "address": _clean_text(data.get("address")),
        "country_code": _clean_text(data.get("countryCode")) or key.jurisdiction_code,
        "vat_number": _clean_text(data.get("vatNumber")) or key.identifier_body,
        "request_identifier": _clean_text(data.get("requestIdentifier")),
        "checked_at": checked.isoformat(),
    }


def row_from_payload(
    input_line: str,
    key: LookupKey,
    payload: dict[str, Any],
    *,
    source: str,
    job_id: str | None = None,
    case_ref: str | None = None,
) -> ResultRow:
    valid = bool(payload.get("valid"))
    request_identifier = payload.get("request_identifier")
    return ResultRow(
        input=input_line,
        source=source,
        state="valid" if valid else "invalid",
        lookup_key=key.value,
        jurisdiction_code=payload.get("country_code") or key.jurisdiction_code,
        identifier_body=payload.get("vat_number") or key.identifier_body,
        valid=valid,
        name=payload.get("name") or "",
        address=payload.get("address") or "",
        details=f"requestIdentifier={request_identifier}" if request_identifier else "",
        checked_at=_parse_timestamp(payload.get("checked_at")),
        job_id=job_id,
        case_ref=case_ref,
    )


def row_from_queued(input_line: str, key: LookupKey, *, job_id: str, case_ref: str | None = None) -> ResultRow:
    return _pending_row(input_line, key, state="queued", job_id=job_id, case_ref=case_ref)


def row_from_error(
    input_line: str,
    key: LookupKey,
    *,
    error_code: str,
    error_message: str,
    attempt: int | None = None,
    job_id: str | None = None,
    case_ref: str | None = None,
) -> ResultRow:
    row = _pending_row(input_line, key, state="error", job_id=job_id, case_ref=case_ref)
    row.error_code = error_code
    row.error_message = error_message[:MAX_DETAIL_LENGTH]
    row.attempt = attempt
    return row


def row_from_malformed(input_line: str, error: MalformedInputError, *, case_ref: str | None = None) -> ResultRow:
    return ResultRow(
        input=input_line,
        source="input",
        state="error",
        error_code=MALFORMED_INPUT_CODE,
        error_message=error.reason.value,
        case_ref=case_ref,
    )


def row_from_item(item: ItemRecord, *, case_ref: str | None = None) -> ResultRow:
    if item.state == ITEM_DONE and item.result_payload is not None:
        return row_from_payload(
            item.input,
            item.key,
            item.result_payload,
            source=item.source or "vies",
            job_id=item.job_id,
            case_ref=case_ref,
        )
    if item.state == ITEM_ERROR:
        return row_from_error(
            item.input,
            item.key,
            error_code=item.last_error_code or "ERROR",
            error_message=item.last_error_message or "",
            attempt=item.attempts,
            job_id=item.job_id,
            case_ref=case_ref,
        )
    row = _pending_row(item.input, item.key, state=item.state, job_id=item.job_id, case_ref=case_ref)
    row.error_code = item.last_error_code
    row.error_message = item.last_error_message
    row.attempt = item.attempts
    row.next_retry_at = item.next_due_at
    return row


def _pending_row(
    input_line: str,
    key: LookupKey,
    *,
    state: str,
    job_id: str | None,
    case_ref: str | None,
) -> ResultRow:
    return ResultRow(
        input=input_line,
        source="vies",
        state=state,
        lookup_key=key.value,
        jurisdiction_code=key.jurisdiction_code,
        identifier_body=key.identifier_body,
        valid=None,
        job_id=job_id,
        case_ref=case_ref,
    )


def _clean_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    stripped = value.strip()
    return "" if stripped in PLACEHOLDER_VALUES else stripped


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
