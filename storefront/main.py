"""
Storefront Webhooks - Main FastAPI Application
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from storefront.api.routes import router as api_router
from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger, setup_logging
from storefront.core.middleware import setup_exception_handlers, setup_middleware
from storefront.db.database import Base, create_engine, create_session_factory
from storefront.domain.services.health_service import check_readiness
from storefront.domain.services.marketplace_client import MarketplaceClient, StaticTokenStore

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Marketplace and payment provider notifications.",
    },
    {
        "name": "admin",
        "description": "Webhook reprocessing and manual shipment updates (X-Admin-API-Key).",
    },
    {"name": "Health", "description": "Liveness and readiness probes."},
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Engine, session factory and marketplace client live for the process"""
    settings: Settings = app.state.settings
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})

    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.marketplace_client = MarketplaceClient(
        settings, StaticTokenStore.from_settings(settings)
    )
    try:
        yield
    finally:
        logger.info("Shutting down application")
        await app.state.marketplace_client.aclose()
        await engine.dispose()
        logger.info("Database connections disposed")


def create_app(settings: Settings) -> FastAPI:
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME
    )

    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description=(
            "Keeps local orders, stock and shipments in step with marketplace "
            "and payment provider webhooks."
        ),
        openapi_tags=_OPENAPI_TAGS,
        lifespan=lifespan,
    )
    app.state.settings = settings

    setup_middleware(app, settings)
    setup_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    @app.get(
        "/health",
        summary="Liveness probe",
        description="The process is up. No dependency checks, so a database outage does not trigger restarts.",
        tags=["Health"],
    )
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get(
        "/health/ready",
        summary="Readiness probe",
        responses={
            200: {"description": "All checks ok"},
            503: {"description": "At least one check failed"},
        },
        tags=["Health"],
    )
    async def readiness_check() -> JSONResponse:
        result = await check_readiness(app.state.session_factory, app.state.settings)
        status_code = 200 if result["status"] == "healthy" else 503
        return JSONResponse(content=result, status_code=status_code)

    return app


app = create_app(get_settings())
