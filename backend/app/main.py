"""Banking Workflow Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from db.database import AsyncSessionLocal, close_db, init_db
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from transactions.ledger import HttpLedgerAdapter
from transactions.scheduler import RetryScheduler

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    # Refuse to start in production without ledger credentials
    try:
        settings.validate_secrets()
    except RuntimeError as e:
        logger.critical("startup_secrets_invalid", error=str(e))
        raise

    await init_db()

    # In-process retry scheduler; deployments using Celery Beat leave it off
    scheduler = None
    if settings.RETRY_SCHEDULER_ENABLED:
        scheduler = RetryScheduler(AsyncSessionLocal, HttpLedgerAdapter.from_settings)
        scheduler.start()
        app.state.retry_scheduler = scheduler

    logger.info(
        "app_started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        retry_scheduler=scheduler is not None,
    )
    yield
    # Shutdown
    if scheduler is not None:
        await scheduler.stop()
    await close_db()
    logger.info("app_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow execution engine and transaction retry proxy "
                    "for mobile banking flows.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
