"""
Enliterator Pipeline - FastAPI Application
==========================================

Main application factory with routers, middleware and the pipeline
components wired up in the lifespan.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from enliterator.api import pipeline_runs
from enliterator.core.config import settings
from enliterator.core.database import AsyncSessionLocal, close_db, init_db
from enliterator.core.graph_store import InMemoryGraphStore
from enliterator.core.pipeline import (
    InProcessTaskQueue,
    ItemLedger,
    PipelineOrchestrator,
    RunWatchdog,
    recover_orphaned_runs,
)
from enliterator.core.schemas import ErrorResponse, HealthResponse
from enliterator.workers import HashingEmbedder, HeuristicExtractor, build_default_registry

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database
    - Open the graph store and start queue consumers
    - Re-dispatch runs orphaned by the previous process

    Shutdown:
    - Stop consumers and watchdog
    - Close graph store and database connections
    """
    logger.info("Starting Enliterator Pipeline", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    graph_store = InMemoryGraphStore()
    await graph_store.open()

    queue = InProcessTaskQueue(workers=settings.TASK_QUEUE_WORKERS)
    orchestrator = PipelineOrchestrator(
        session_factory=AsyncSessionLocal,
        registry=build_default_registry(
            graph_store=graph_store,
            extractor=HeuristicExtractor(),
            embedder=HashingEmbedder(),
        ),
        ledger=ItemLedger(AsyncSessionLocal),
        queue=queue,
        settings=settings,
    )
    queue.set_handler(orchestrator.execute_task)
    await queue.start()

    if settings.RECOVER_RUNS_ON_STARTUP:
        await recover_orphaned_runs(orchestrator)

    watchdog = RunWatchdog(orchestrator)
    await watchdog.start()

    app.state.orchestrator = orchestrator
    app.state.task_queue = queue

    yield

    logger.info("Shutting down Enliterator Pipeline")
    await watchdog.stop()
    await queue.stop()
    await graph_store.close()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Enliterator pipeline orchestration service",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """Report database connectivity and whether queue consumers are running."""
        database = "connected"
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        queue = getattr(request.app.state, "task_queue", None)
        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            task_queue="running" if queue is not None and queue.running else "stopped",
        )

    app.include_router(pipeline_runs.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "enliterator.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
