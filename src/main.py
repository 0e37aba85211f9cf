"""On-call scheduling and alert escalation API."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import settings
from src.core.migrations import run_migrations
from src.database import close_database, init_models
from src.logging_config import get_logger, setup_logging
from src.middleware import CorrelationIdMiddleware
from src.routers import escalation_policies, escalations, health, oncall
from src.services.scheduler import scheduler_lifespan

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    if settings.database_migrate_on_startup:
        await asyncio.to_thread(run_migrations)
    elif settings.database_auto_create:
        await init_models()
        logger.info("Database tables ensured")

    # Scheduler start also re-arms persisted escalation timers
    async with scheduler_lifespan():
        logger.info("On-call escalation API started")
        yield
        logger.info("Shutting down on-call escalation API...")

    await close_database()
    logger.info("On-call escalation API shutdown complete")


app = FastAPI(
    title="On-call Escalation API",
    description="On-call rotation scheduling and alert escalation",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(oncall.router)
app.include_router(escalation_policies.router)
app.include_router(escalations.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "On-call Escalation API",
        "version": "0.1.0",
        "docs": "/docs",
    }
