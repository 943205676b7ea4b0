from fastapi import APIRouter, Depends, HTTPException, status

from vatcheck.api.deps import get_services
from vatcheck.schemas.jobs import JobPollResponse
from vatcheck.services.batches import get_job_progress
from vatcheck.services.repository import RepositoryNotFoundError, RepositoryUnavailableError
from vatcheck.services.runtime import LookupServices

router = APIRouter()


@router.get("/jobs/{job_id}", response_model=JobPollResponse)
@router.get("/fr-job/{job_id}", response_model=JobPollResponse, include_in_schema=False)
async def get_job(job_id: str, services: LookupServices = Depends(get_services)) -> JobPollResponse:
    try:
        return await get_job_progress(services, job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
