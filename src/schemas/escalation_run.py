"""Escalation run and timeline schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel

from src.models.escalation_policy import AlertSeverity
from src.models.escalation_run import DispatchStatus, RunStatus


class TriggerEscalationRequest(BaseModel):
    """Request to start escalating an alert."""

    policy_id: uuid.UUID
    severity: AlertSeverity = AlertSeverity.MAJOR


class EscalationRunResponse(BaseModel):
    """Response schema for an escalation run."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    alert_id: str
    policy_id: uuid.UUID
    severity: AlertSeverity
    status: RunStatus
    current_step_index: int
    ack_timeout_minutes: int
    started_at: datetime
    next_fire_at: datetime | None
    acknowledged_at: datetime | None
    resolved_at: datetime | None
    exhausted_at: datetime | None
    archived_at: datetime | None


class EscalationActionResponse(BaseModel):
    """Result of acknowledge/resolve; both succeed without a run."""

    alert_id: str
    status: RunStatus | None
    run: EscalationRunResponse | None = None


class EscalationEventResponse(BaseModel):
    """One executed escalation step."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    run_id: uuid.UUID
    step_number: int
    idempotency_key: str
    recipients: list[dict[str, str]]
    dispatch_status: DispatchStatus
    warning: str | None
    triggered_at: datetime


class EscalationTimelineResponse(BaseModel):
    """Executed steps for an alert, oldest first."""

    alert_id: str
    events: list[EscalationEventResponse]
    count: int
