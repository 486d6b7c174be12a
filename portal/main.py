from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from portal.config.logging import setup_logging
from portal.config.settings import settings
from portal.infra.database import close_database
from portal.v1.core.exceptions import (
    PortalException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    portal_exception_handler,
)
from portal.v1.core.registries import job_registry, webhook_provider_registry
from portal.v1.healthz import router as health_router
from portal.v1.infra.jobs.routes import router as jobs_router
from portal.v1.provisioning.registry_init import register_job_handlers
from portal.v1.provisioning.routes import checkout_router, installs_router, setup_router
from portal.v1.webhooks.providers import register_webhook_providers
from portal.v1.webhooks.routes import router as webhooks_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Provisioning portal: checkout, payment webhooks, install status and job queue",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(PortalException, portal_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(webhooks_router, prefix="/v1")
    app.include_router(checkout_router, prefix="/v1")
    app.include_router(installs_router, prefix="/v1")
    app.include_router(setup_router, prefix="/v1")
    app.include_router(jobs_router, prefix="/v1")

    register_webhook_providers(settings)
    register_job_handlers(settings)

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        webhook_provider_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "portal.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
