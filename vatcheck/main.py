from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from vatcheck.api.router import api_router
from vatcheck.core.config import Settings, get_settings
from vatcheck.core.telemetry import configure_logging, setup_api_telemetry, shutdown_api_telemetry
from vatcheck.services.runtime import build_services
from vatcheck.services.vies import ViesClient

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, *, client: ViesClient | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(settings, client=client)
        app.state.services = services
        await services.start()
        logger.info(
            "vatcheck started environment=%s slow_lane=%s",
            settings.environment,
            ",".join(sorted(services.slow_lane_jurisdictions)),
        )
        try:
            yield
        finally:
            await services.close()
            app.state.services = None
            shutdown_api_telemetry(telemetry_runtime)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    telemetry_runtime = setup_api_telemetry(app, settings)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()
