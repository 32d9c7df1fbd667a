import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from scalar_fastapi import get_scalar_api_reference

from src.config.settings import settings
from src.core.observability import init_observability
from src.domains.queue.router import router as queue_router
from src.domains.workouts.router import router as workouts_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    # Startup
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.APP_ENV, database_configured=bool(settings.DATABASE_URL))

    # Initialize database tables
    try:
        from src.config.database import init_db
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_init_failed", error=str(e), type=type(e).__name__)
        # Re-raise in production to prevent unhealthy startup
        if settings.is_production:
            raise

    # Queue client and maintenance scheduler
    from src.core.celery_app import celery_app, queue_config
    from src.core.redis import JobHistory
    from src.core.scheduler import QueueMaintenanceScheduler
    from src.domains.queue.client import QueueClient

    history = JobHistory(
        queue_config.name,
        keep_completed=queue_config.keep_completed,
        keep_failed=queue_config.keep_failed,
    )
    app.state.queue_client = QueueClient(celery_app, queue_config, history)
    app.state.queue_scheduler = None
    logger.info("queue_client_ready", queue=queue_config.name, concurrency=queue_config.concurrency)

    if settings.QUEUE_SCHEDULER_ENABLED:
        scheduler = QueueMaintenanceScheduler(history, queue_config)
        try:
            await scheduler.start()
            app.state.queue_scheduler = scheduler
            logger.info("scheduler_started")
        except Exception as e:
            logger.warning("scheduler_start_failed", error=str(e), type=type(e).__name__)

    yield
    # Shutdown
    logger.info("app_shutting_down", app_name=settings.APP_NAME)
    if app.state.queue_scheduler is not None:
        try:
            await app.state.queue_scheduler.stop()
            logger.info("scheduler_stopped")
        except Exception as e:
            logger.warning("scheduler_stop_failed", error=str(e), type=type(e).__name__)

    try:
        app.state.queue_client.close()
        logger.info("queue_client_closed")
    except Exception as e:
        logger.warning("queue_client_close_failed", error=str(e), type=type(e).__name__)

    try:
        from src.core.redis import close_redis
        await close_redis()
        logger.info("redis_closed")
    except Exception as e:
        logger.warning("redis_close_failed", error=str(e), type=type(e).__name__)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    # Initialize observability (GlitchTip/Sentry)
    init_observability()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Coaching platform workout plan API",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-User-Id", "X-Request-Id"],
    )

    # Include routers
    app.include_router(workouts_router, prefix=settings.API_V1_PREFIX, tags=["Workouts"])
    app.include_router(queue_router, prefix=f"{settings.API_V1_PREFIX}/queue", tags=["Queue"])

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.APP_ENV,
        }

    # Scalar API Reference - Modern API documentation
    @app.get("/reference", include_in_schema=False)
    async def scalar_html():
        return get_scalar_api_reference(
            openapi_url=app.openapi_url,
            title=f"{settings.APP_NAME} - API Reference",
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
