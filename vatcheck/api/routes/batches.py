from fastapi import APIRouter, Depends, HTTPException, status

from vatcheck.api.deps import get_services
from vatcheck.schemas.batches import BatchRequest, BatchResponse
from vatcheck.services.batches import submit_batch
from vatcheck.services.repository import RepositoryConflictError, RepositoryUnavailableError
from vatcheck.services.runtime import LookupServices

router = APIRouter()


@router.post("/validate-batch", response_model=BatchResponse)
async def validate_batch(payload: BatchRequest, services: LookupServices = Depends(get_services)) -> BatchResponse:
    try:
        return await submit_batch(services, payload.vat_numbers, case_ref=payload.case_ref)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
