"""
FastAPI Backend for TILEGUARD.

Hosts one tile recovery engine and exposes it to the map front-end:
- Layer registration and failure/success reporting
- Recovered tile delivery
- Tile service health and notifications

Version: 1.0.0
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from api.config import Settings, settings as default_settings
from api.health import perform_full_health_check, perform_liveness_check
from api.routers import tiles as tiles_router
from api.state import build_app_state, get_app_state
from src.config import RecoveryConfig, get_recovery_config
from src.tiles.service import TileRecoveryService

get_recovery_config().configure_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    recovery_config: Optional[RecoveryConfig] = None,
    service: Optional[TileRecoveryService] = None,
) -> FastAPI:
    """
    Application factory for the TILEGUARD API.

    Each app owns its own recovery service, started and closed by the
    lifespan handler.

    Args:
        settings: Hosting settings (defaults to environment)
        recovery_config: Engine tuning (defaults to environment)
        service: Prebuilt service, mainly for tests

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        app_state = build_app_state(settings, recovery_config, service)
        application.state.tiles = app_state
        await app_state.service.start()
        try:
            yield
        finally:
            await app_state.service.aclose()
            logger.info("Tile recovery service stopped")

    application = FastAPI(
        title="TILEGUARD API",
        description="""
## Marine Forecast Tile Recovery API

Keeps WMS forecast layers on the map when the upstream tile server
misbehaves: failures are classified, retried with escalating fallbacks,
and surfaced to the user at most once per escalation tier.
        """,
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors())})

    @application.get("/", tags=["System"])
    async def root():
        return {
            "name": "TILEGUARD API",
            "version": "1.0.0",
            "status": "operational",
        }

    @application.get("/api/health", tags=["System"])
    async def health(request: Request):
        return perform_full_health_check(get_app_state(request))

    @application.get("/api/health/live", tags=["System"])
    async def liveness():
        return perform_liveness_check()

    application.include_router(tiles_router.router)
    return application


# Create the application
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "api.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
        log_level=default_settings.log_level,
    )
