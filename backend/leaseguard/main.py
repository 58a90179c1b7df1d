"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leaseguard.api import defense
from leaseguard.api.defense import Services, build_services

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the app; tests pass prebuilt services, production builds them at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services()
        gateway = app.state.services.gateway
        if gateway.settings.has_credential:
            logger.info(f"Model service: {gateway.settings.model} at {gateway.settings.base_url}")
        else:
            logger.warning("TOGETHER_API_KEY not set; answers come from the offline fallback")
        yield

    app = FastAPI(
        title="LeaseGuard",
        description="Evidence-grounded tenant defense for Swiss lease disputes",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(defense.router, prefix="/api/leases", tags=["Leases"])
    app.include_router(defense.citations_router, prefix="/api/citations", tags=["Citations"])

    @app.get("/api/health")
    async def health():
        gateway = app.state.services.gateway
        return {
            "status": "operational",
            "platform": "LeaseGuard",
            "model_configured": gateway.settings.has_credential,
            "fallback_active": gateway.fallback.is_open,
            "catalogue_version": app.state.services.composer.catalogue.version,
        }

    @app.get("/api/health/llm")
    async def health_llm():
        return await app.state.services.gateway.check_status()

    return app


app = create_app()
