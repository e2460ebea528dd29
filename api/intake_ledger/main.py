from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from intake_ledger.api.router import api_router
from intake_ledger.core.config import Settings, get_settings
from intake_ledger.core.telemetry import (
    TelemetryRuntime,
    configure_api_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from intake_ledger.services.geocoding import get_geocoder
from intake_ledger.services.kv import get_store
from intake_ledger.services.object_store import get_object_store

logger = logging.getLogger(__name__)


def create_app(settings: Settings) -> FastAPI:
    telemetry_runtime: TelemetryRuntime | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            if telemetry_runtime is not None:
                shutdown_api_telemetry(app, telemetry_runtime)
            # Ensure the asyncpg pool shuts down on app teardown.
            await get_store().close()
            get_store.cache_clear()
            get_geocoder.cache_clear()
            get_object_store.cache_clear()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    telemetry_runtime = setup_api_telemetry(app, settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
        max_age=settings.cors_max_age_seconds,
    )

    allowed_hosts = {host.lower() for host in settings.allowed_hosts}

    @app.middleware("http")
    async def allowed_host_middleware(request: Request, call_next):
        hostname = (request.url.hostname or "").lower()
        if allowed_hosts and hostname not in allowed_hosts:
            logger.warning("rejected request for host=%s path=%s", hostname, request.url.path)
            return PlainTextResponse(f"{hostname} not allowed", status_code=403)
        return await call_next(request)

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


configure_api_logging()
app = create_app(get_settings())
