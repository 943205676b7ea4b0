from datetime import datetime

from pydantic import BaseModel, Field


class BatchRequest(BaseModel):
    vat_numbers: list[str] = Field(default_factory=list, max_length=5000)
    case_ref: str | None = Field(default=None, max_length=200)


class ResultRow(BaseModel):
    input: str
    source: str
    state: str
    lookup_key: str | None = None
    jurisdiction_code: str | None = None
    identifier_body: str | None = None
    valid: bool | None = None
    name: str = ""
    address: str = ""
    error_code: str | None = None
    error_message: str | None = None
    details: str = ""
    attempt: int | None = None
    next_retry_at: datetime | None = None
    checked_at: datetime | None = None
    job_id: str | None = None
    case_ref: str | None = None


class BatchResponse(BaseModel):
    count: int
    job_id: str | None = None
    duplicates_ignored: int = 0
    results: list[ResultRow] = Field(default_factory=list)
