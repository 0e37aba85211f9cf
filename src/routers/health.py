"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from src.database import check_database_connection
from src.services.scheduler import get_scheduler

router = APIRouter(tags=["Health"])


def _scheduler_state() -> str:
    current = get_scheduler()
    return "running" if current is not None and current.running else "stopped"


@router.get("/health", response_model=None)
async def health_check() -> Response:
    """
    Health check endpoint with database and scheduler status.

    Escalation timers live in the scheduler, so a stopped scheduler is
    reported but does not fail the check: persisted deadlines are picked
    up by the next recovery scan.
    """
    db_connected = await check_database_connection()
    content = {
        "status": "healthy" if db_connected else "degraded",
        "database": "connected" if db_connected else "disconnected",
        "scheduler": _scheduler_state(),
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if db_connected else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=content,
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """
    Liveness probe: the process is up. Does not touch the database.
    """
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """
    Readiness probe: the database is reachable, so requests can be served.
    """
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
