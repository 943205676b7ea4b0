from fastapi import HTTPException, Request, status

from vatcheck.services.runtime import LookupServices


def get_services(request: Request) -> LookupServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="service is starting")
    return services
