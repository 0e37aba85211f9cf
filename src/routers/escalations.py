"""Escalation router.

Trigger, acknowledge, resolve and close alerts, and view a run's
timeline. Alerts are identified by the caller's own alert ID.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import OncallError
from src.core.http_errors import http_error
from src.database import get_db
from src.models.escalation_run import EscalationRun
from src.schemas.escalation_run import (
    EscalationActionResponse,
    EscalationEventResponse,
    EscalationRunResponse,
    EscalationTimelineResponse,
    TriggerEscalationRequest,
)
from src.services.escalation_engine import EscalationEngine
from src.services.scheduler import get_escalation_engine

router = APIRouter(prefix="/api/escalations", tags=["escalations"])


def _action_response(alert_id: str, run: EscalationRun | None) -> EscalationActionResponse:
    if run is None:
        return EscalationActionResponse(alert_id=alert_id, status=None)
    return EscalationActionResponse(
        alert_id=alert_id,
        status=run.status,
        run=EscalationRunResponse.model_validate(run),
    )


@router.post(
    "/alerts/{alert_id}/trigger",
    response_model=EscalationRunResponse,
    status_code=status.HTTP_201_CREATED,
)
async def trigger_escalation(
    alert_id: str,
    data: TriggerEscalationRequest,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> EscalationRunResponse:
    """Start escalating an alert under a policy.

    Re-triggering with the same policy and severity returns the active
    run; a different policy or severity is a conflict.
    """
    try:
        run = await engine.start(db, alert_id, data.policy_id, data.severity)
    except OncallError as exc:
        raise http_error(exc) from exc
    return EscalationRunResponse.model_validate(run)


@router.post("/alerts/{alert_id}/acknowledge", response_model=EscalationActionResponse)
async def acknowledge_alert(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> EscalationActionResponse:
    """Acknowledge an alert. Always succeeds, even without an active run."""
    run = await engine.acknowledge(db, alert_id)
    return _action_response(alert_id, run)


@router.post("/alerts/{alert_id}/resolve", response_model=EscalationActionResponse)
async def resolve_alert(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> EscalationActionResponse:
    run = await engine.resolve(db, alert_id)
    return _action_response(alert_id, run)


@router.post("/alerts/{alert_id}/close", response_model=EscalationRunResponse)
async def close_alert(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> EscalationRunResponse:
    """Archive the alert's run, freeing the alert ID for a new one."""
    run = await engine.close_alert(db, alert_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No escalation run for alert {alert_id}",
        )
    return EscalationRunResponse.model_validate(run)


@router.get("/alerts/{alert_id}", response_model=EscalationRunResponse)
async def get_escalation_run(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> EscalationRunResponse:
    try:
        run = await engine.get_run(db, alert_id)
    except OncallError as exc:
        raise http_error(exc) from exc
    return EscalationRunResponse.model_validate(run)


@router.get("/alerts/{alert_id}/timeline", response_model=EscalationTimelineResponse)
async def get_escalation_timeline(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    engine: EscalationEngine = Depends(get_escalation_engine),
) -> EscalationTimelineResponse:
    """Executed escalation steps for an alert, across all of its runs."""
    events = await engine.get_timeline(db, alert_id)
    return EscalationTimelineResponse(
        alert_id=alert_id,
        events=[EscalationEventResponse.model_validate(e) for e in events],
        count=len(events),
    )
