"""Escalation run persistence.

Runs and their step events are the only durable state of the escalation
engine; timers are derived from ``next_fire_at`` and re-armed from here
after a restart.
"""

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.logging_config import get_logger
from src.models.escalation_policy import AlertSeverity
from src.models.escalation_run import (
    DispatchStatus,
    EscalationEvent,
    EscalationRun,
    RunStatus,
)

logger = get_logger(__name__)

ESCALATING_STATUSES = [s for s in RunStatus if s.is_escalating]


async def get_active_run(
    db: AsyncSession,
    alert_id: str,
    for_update: bool = False,
) -> EscalationRun | None:
    """The un-archived run for an alert, if any.

    Args:
        db: Database session.
        alert_id: Alert identifier.
        for_update: Lock the row until the transaction ends (ignored by
            backends without row locks).
    """
    query = select(EscalationRun).where(
        EscalationRun.alert_id == alert_id,
        EscalationRun.archived_at.is_(None),
    ).execution_options(populate_existing=True)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def create_run(
    db: AsyncSession,
    alert_id: str,
    policy_id: uuid.UUID,
    severity: AlertSeverity,
    ack_timeout_minutes: int,
    started_at: datetime,
) -> EscalationRun | None:
    """Insert a new run in NOTIFYING state.

    Returns:
        The run, or None when a concurrent writer created an active run
        for the same alert first.
    """
    run = EscalationRun(
        alert_id=alert_id,
        policy_id=policy_id,
        severity=severity,
        status=RunStatus.NOTIFYING,
        current_step_index=0,
        ack_timeout_minutes=ack_timeout_minutes,
        started_at=started_at,
    )
    db.add(run)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("Escalation run already created by another worker", alert_id=alert_id)
        return None
    return run


async def list_active_awaiting_ack(db: AsyncSession) -> list[EscalationRun]:
    """Runs still walking their policy with an armed deadline, earliest first."""
    result = await db.execute(
        select(EscalationRun)
        .where(
            EscalationRun.archived_at.is_(None),
            EscalationRun.status.in_(ESCALATING_STATUSES),
            EscalationRun.next_fire_at.is_not(None),
        )
        .order_by(EscalationRun.next_fire_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_runs(
    db: AsyncSession,
    alert_id: str,
) -> list[EscalationRun]:
    """Every run of an alert, archived ones included, newest first."""
    result = await db.execute(
        select(EscalationRun)
        .where(EscalationRun.alert_id == alert_id)
        .order_by(EscalationRun.started_at.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def build_step_event(
    run: EscalationRun,
    step_number: int,
    recipients: list[dict[str, str]],
    triggered_at: datetime,
    warning: str | None = None,
) -> EscalationEvent:
    """Event row for an executed step.

    The caller commits it in the same transaction as the run transition;
    the (run_id, step_number) unique constraint makes that commit fail
    with IntegrityError if another worker already executed the step.
    """
    return EscalationEvent(
        id=uuid.uuid4(),
        run_id=run.id,
        alert_id=run.alert_id,
        step_number=step_number,
        idempotency_key=f"{run.id}:{step_number}",
        recipients=recipients,
        dispatch_status=DispatchStatus.PENDING if recipients else DispatchStatus.SKIPPED,
        warning=warning,
        triggered_at=triggered_at,
    )


async def update_dispatch_status(
    db: AsyncSession,
    event_id: uuid.UUID,
    status: DispatchStatus,
    warning: str | None = None,
) -> None:
    event = await db.get(EscalationEvent, event_id)
    if event is None:
        return
    event.dispatch_status = status
    if warning is not None:
        event.warning = warning
    await db.commit()


async def list_events(
    db: AsyncSession,
    alert_id: str,
) -> list[EscalationEvent]:
    """Executed steps of an alert's runs, in execution order."""
    result = await db.execute(
        select(EscalationEvent)
        .where(EscalationEvent.alert_id == alert_id)
        .order_by(EscalationEvent.triggered_at, EscalationEvent.step_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
