"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from renderqueue import __version__
from renderqueue.api.middleware import create_metrics_middleware
from renderqueue.api.routes import assets_router, health_router, jobs_router
from renderqueue.config import Settings, get_settings
from renderqueue.db.connection import Database
from renderqueue.db.migrations import run_migrations
from renderqueue.observability.logging import setup_logging
from renderqueue.observability.metrics import setup_metrics
from renderqueue.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from renderqueue.workflow.registry import WorkflowRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Opens and migrates the database unless one was handed to create_app,
    and disposes it again on shutdown.
    """
    settings: Settings = app.state.settings
    setup_logging(settings)
    setup_metrics()
    setup_tracing()

    owns_database = app.state.database is None
    if owns_database:
        app.state.database = Database(settings=settings)
        instrument_sqlalchemy(app.state.database.engine.sync_engine)
        report = await run_migrations(app.state.database)
        if not report.ok:
            logger.error("Some migrations failed", extra={"failed": sorted(report.failed)})

    logger.info("Application started")

    yield

    if owns_database:
        await app.state.database.dispose()
        app.state.database = None
    logger.info("Application shutdown")


def create_app(
    database: Database | None = None,
    registry: WorkflowRegistry | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        database: Database to serve from. Created at startup if not given.
        registry: Workflow registry used to validate submissions.
        settings: Optional settings override.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Render Queue API",
        description="Durable job queue for image generation and asset downloads",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings or get_settings()
    app.state.database = database
    app.state.registry = registry or WorkflowRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(
        BaseHTTPMiddleware,
        dispatch=create_metrics_middleware(),
    )

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(assets_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings=settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
