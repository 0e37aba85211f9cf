"""Background job scheduler.

One APScheduler ``AsyncIOScheduler`` per process hosts:
- the escalation engine's one-shot ack-timeout timers (via SchedulerClock),
- the periodic escalation recovery scan,
- the periodic handoff check.

The engine and dispatcher are process-wide singletons created on first
use; routers receive them through ``get_escalation_engine`` and
``get_dispatcher`` so tests can override them.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.database import get_session_maker
from src.logging_config import get_logger
from src.services.clock import SchedulerClock
from src.services.escalation_engine import EscalationEngine
from src.services.handoff_notifier import check_handoffs
from src.services.notification_dispatcher import NotificationDispatcher, build_dispatcher

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None

_engine: EscalationEngine | None = None
_dispatcher: NotificationDispatcher | None = None


def _get_or_create_scheduler() -> AsyncIOScheduler:
    global scheduler
    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")
    return scheduler


def get_dispatcher() -> NotificationDispatcher:
    """The process-wide notification dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(settings)
    return _dispatcher


def get_escalation_engine() -> EscalationEngine:
    """The process-wide escalation engine, timed by the background scheduler."""
    global _engine
    if _engine is None:
        _engine = EscalationEngine(
            clock=SchedulerClock(_get_or_create_scheduler()),
            dispatcher=get_dispatcher(),
        )
    return _engine


async def recover_escalations() -> None:
    """Fire overdue escalation timers and re-arm the rest.

    Runs at startup and then periodically as the catch-up pass for
    transitions whose timer was lost (crash, failed callback).
    """
    engine = get_escalation_engine()
    async with get_session_maker()() as db:
        try:
            await engine.recover(db)
        except Exception as e:
            logger.error("Escalation recovery scan failed", error=str(e))


async def check_handoffs_all_rotations() -> None:
    """Run the handoff check for every active rotation."""
    async with get_session_maker()() as db:
        try:
            await check_handoffs(db, get_dispatcher())
        except Exception as e:
            logger.error("Handoff check failed", error=str(e))


def start_scheduler() -> AsyncIOScheduler:
    """Start the background job scheduler.

    Returns:
        The started scheduler instance
    """
    current = _get_or_create_scheduler()

    if current.running:
        logger.warning("Scheduler already running")
        return current

    if settings.escalation_recovery_enabled:
        current.add_job(
            recover_escalations,
            trigger=IntervalTrigger(minutes=settings.escalation_recovery_interval_minutes),
            id="escalation_recovery",
            name="Escalation Recovery Scan",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled escalation recovery job",
            interval_minutes=settings.escalation_recovery_interval_minutes,
        )

    if settings.handoff_check_enabled:
        current.add_job(
            check_handoffs_all_rotations,
            trigger=IntervalTrigger(minutes=settings.handoff_check_interval_minutes),
            id="handoff_check",
            name="On-call Handoff Check",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled handoff check job",
            interval_minutes=settings.handoff_check_interval_minutes,
        )

    current.start()
    logger.info("Background scheduler started")

    return current


def stop_scheduler() -> None:
    """Stop the background job scheduler.

    Pending escalation timers are dropped; their deadlines are persisted
    and re-armed by the next process's recovery scan.
    """
    global scheduler, _engine

    if scheduler is not None:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        scheduler = None
        _engine = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the current scheduler instance.

    Returns:
        The scheduler instance or None if not created
    """
    return scheduler


@asynccontextmanager
async def scheduler_lifespan() -> AsyncGenerator[None, None]:
    """Async context manager for scheduler lifecycle.

    Starts the scheduler, runs the startup recovery scan, and on exit
    waits for in-flight dispatches before stopping.
    """
    start_scheduler()
    await recover_escalations()
    try:
        yield
    finally:
        if _engine is not None:
            await _engine.drain()
        stop_scheduler()
