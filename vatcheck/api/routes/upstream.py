from fastapi import APIRouter, Depends, HTTPException, status

from vatcheck.api.deps import get_services
from vatcheck.schemas.jobs import CountryAvailability, UpstreamStatusOut
from vatcheck.services.runtime import LookupServices

router = APIRouter()


@router.get("/vies-status", response_model=UpstreamStatusOut)
async def vies_status(services: LookupServices = Depends(get_services)) -> UpstreamStatusOut:
    snapshot = await services.status_gate.snapshot()
    if snapshot is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="upstream status unavailable")
    return UpstreamStatusOut(
        countries=[
            CountryAvailability(countryCode=entry["countryCode"], availability=entry["availability"])
            for entry in snapshot
        ]
    )
