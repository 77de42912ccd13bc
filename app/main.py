"""Wager settlement engine FastAPI application.

Read-only HTTP surface: health, wagers and scheduled job status. Settlement
itself runs in the Celery workers (app.tasks).
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from app.api.routes import health, jobs, wagers
from app.config import get_settings
from app.logging import configure_logging

configure_logging()

logger = structlog.get_logger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("starting_settlement_api", version="0.1.0")
    yield
    logger.info("shutting_down_settlement_api")


# Create FastAPI application
app = FastAPI(
    title="Wager Settlement Engine",
    description="Settles single and combination sports wagers against match results",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(health.router)
app.include_router(wagers.router)
app.include_router(jobs.router)
