from datetime import datetime

from pydantic import BaseModel, Field

from vatcheck.schemas.batches import ResultRow


class JobOut(BaseModel):
    job_id: str
    status: str
    total: int
    done: int
    created_at: datetime
    updated_at: datetime
    message: str | None = None
    label: str | None = None


class JobPollResponse(BaseModel):
    job: JobOut
    results: list[ResultRow] = Field(default_factory=list)


class CountryAvailability(BaseModel):
    countryCode: str
    availability: str


class UpstreamStatusOut(BaseModel):
    countries: list[CountryAvailability] = Field(default_factory=list)
