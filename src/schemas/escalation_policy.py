"""Escalation policy schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from src.config import settings
from src.models.escalation_policy import AlertSeverity


class SeverityOverride(BaseModel):
    """Per-severity replacement for the policy's ack timeout."""

    ack_timeout_minutes: int | None = Field(default=None, ge=0, le=1440)


class EscalationStepCreate(BaseModel):
    """One step of a policy.

    Either ``channels`` or ``oncall_rotation_id`` must be provided.
    """

    step_number: int = Field(ge=1)
    delay_minutes: int = Field(
        default=0,
        ge=0,
        le=1440,
        description="Offset from run start in minutes (0-1440).",
    )
    channels: list[str] = Field(default_factory=list)
    oncall_rotation_id: uuid.UUID | None = None
    notify_on_ack_timeout: bool = True
    skip_if_acknowledged: bool = True

    @model_validator(mode="after")
    def validate_recipients(self) -> "EscalationStepCreate":
        """Ensure the step can resolve to at least one recipient."""
        if not self.channels and self.oncall_rotation_id is None:
            msg = "Either channels or oncall_rotation_id must be provided"
            raise ValueError(msg)
        return self


class EscalationPolicyCreate(BaseModel):
    """Request schema for creating an escalation policy."""

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    ack_timeout_minutes: int = Field(
        default_factory=lambda: settings.default_ack_timeout_minutes,
        ge=0,
        le=1440,
    )
    severity_overrides: dict[AlertSeverity, SeverityOverride] = Field(
        default_factory=dict
    )
    active: bool = True
    steps: list[EscalationStepCreate] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_step_numbers(self) -> "EscalationPolicyCreate":
        """Step numbers must be unique; they define traversal order."""
        numbers = [step.step_number for step in self.steps]
        if len(numbers) != len(set(numbers)):
            msg = "step_number values must be unique"
            raise ValueError(msg)
        return self


class EscalationPolicyUpdate(BaseModel):
    """Request schema for updating a policy.

    All fields are optional; ``steps``, when provided, replaces the whole
    step list.
    """

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    ack_timeout_minutes: int | None = Field(default=None, ge=0, le=1440)
    severity_overrides: dict[AlertSeverity, SeverityOverride] | None = None
    active: bool | None = None
    steps: list[EscalationStepCreate] | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def validate_step_numbers(self) -> "EscalationPolicyUpdate":
        if self.steps is not None:
            numbers = [step.step_number for step in self.steps]
            if len(numbers) != len(set(numbers)):
                msg = "step_number values must be unique"
                raise ValueError(msg)
        return self


class EscalationStepResponse(BaseModel):
    """Response schema for a step."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    step_number: int
    delay_minutes: int
    channels: list[str]
    oncall_rotation_id: uuid.UUID | None
    notify_on_ack_timeout: bool
    skip_if_acknowledged: bool


class EscalationPolicyResponse(BaseModel):
    """Response schema for a policy."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    name: str
    description: str | None
    ack_timeout_minutes: int
    severity_overrides: dict[str, SeverityOverride]
    active: bool
    steps: list[EscalationStepResponse]
    created_at: datetime
    updated_at: datetime
