"""
SessionGuard - Main FastAPI Application
Session lifecycle and concurrency control for multi-tenant deployments.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sessionguard.config import settings
from sessionguard.database import init_db, close_db, async_session_maker
from sessionguard.api.v1 import api_router
from sessionguard.middleware.logging import RequestLoggingMiddleware
from sessionguard.middleware.error_handler import global_exception_handler, AppException
from sessionguard.middleware.rate_limit import setup_rate_limiting
from sessionguard.services.audit_service import get_audit_service
from sessionguard.services.geolocation import build_geolocation_resolver
from sessionguard.services.maintenance_jobs import MaintenanceScheduler
from sessionguard.services.session_manager import UserLockRegistry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    await init_db()

    # Shared per-process services
    app.state.geo_resolver = build_geolocation_resolver(settings)
    app.state.audit_service = get_audit_service(async_session_maker)
    app.state.session_locks = UserLockRegistry()

    scheduler = None
    if settings.ENABLE_MAINTENANCE_SCHEDULER:
        scheduler = MaintenanceScheduler(
            async_session_maker,
            app.state.geo_resolver,
            app.state.audit_service,
        )
        await scheduler.start()
    else:
        logger.info("Maintenance scheduler disabled")
    app.state.maintenance_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()

    await app.state.geo_resolver.aclose()
    logger.info("Geolocation client closed")

    # Shutdown - dispose engine to close all connections immediately
    logger.info("Shutting down application...")
    await close_db()
    logger.info("Database connections closed")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Session registration, validation, heartbeat and invalidation",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        lifespan=lifespan,
    )

    # When allow_origins is ["*"], allow_credentials must be False
    wildcard = "*" in settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=not wildcard,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Custom middleware
    app.add_middleware(RequestLoggingMiddleware)

    # Global exception handler - register AppException first for proper handling
    app.add_exception_handler(AppException, global_exception_handler)
    app.add_exception_handler(RequestValidationError, global_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Setup rate limiting
    setup_rate_limiting(app)

    # Mount API router
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check():
        return JSONResponse(
            content={
                "status": "healthy",
                "version": settings.APP_VERSION,
                "environment": settings.ENVIRONMENT,
            }
        )

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sessionguard.main:app",
        host="0.0.0.0",
        port=8081,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
