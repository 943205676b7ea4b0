from fastapi import APIRouter

from vatcheck.api.routes import batches, health, jobs, upstream

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(batches.router, prefix="/api", tags=["batches"])
api_router.include_router(jobs.router, prefix="/api", tags=["jobs"])
api_router.include_router(upstream.router, prefix="/api", tags=["upstream"])
