"""Builders for rotations, overrides and policies used across tests."""

import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.escalation_policy import EscalationPolicy
from src.models.rotation import OncallOverride, OncallRotation
from src.schemas.escalation_policy import (
    EscalationPolicyCreate,
    EscalationStepCreate,
    SeverityOverride,
)
from src.schemas.rotation import RotationCreate
from src.services.escalation_policy_service import create_policy
from src.services.rotation_service import create_rotation

from conftest import T0


def make_rotation(
    participants: list[str] | None = None,
    shift_duration_minutes: int = 480,
    timezone: str = "UTC",
    start_anchor: datetime = T0,
    active: bool = True,
) -> OncallRotation:
    """Unsaved rotation for pure resolver tests."""
    return OncallRotation(
        id=uuid.uuid4(),
        name="primary",
        participants=["p0", "p1", "p2"] if participants is None else participants,
        shift_duration_minutes=shift_duration_minutes,
        timezone=timezone,
        start_anchor=start_anchor,
        handoff_notification_minutes=30,
        handoff_channels=[],
        active=active,
    )


def make_override(
    rotation: OncallRotation,
    user_id: str,
    starts_at: datetime,
    ends_at: datetime,
    created_at: datetime = T0,
) -> OncallOverride:
    """Unsaved override for pure resolver tests."""
    return OncallOverride(
        id=uuid.uuid4(),
        rotation_id=rotation.id,
        user_id=user_id,
        starts_at=starts_at,
        ends_at=ends_at,
        created_at=created_at,
    )


async def save_rotation(
    db: AsyncSession,
    participants: list[str] | None = None,
    shift_duration_minutes: int = 480,
    timezone: str = "UTC",
    start_anchor: datetime = T0,
    active: bool = True,
    handoff_notification_minutes: int = 30,
    handoff_channels: list[str] | None = None,
    name: str = "primary",
) -> OncallRotation:
    return await create_rotation(
        db,
        RotationCreate(
            name=name,
            participants=["p0", "p1", "p2"] if participants is None else participants,
            shift_duration_minutes=shift_duration_minutes,
            timezone=timezone,
            start_anchor=start_anchor,
            handoff_notification_minutes=handoff_notification_minutes,
            handoff_channels=handoff_channels or [],
            active=active,
        ),
    )


def step(
    number: int,
    delay: int = 0,
    channels: list[str] | None = None,
    rotation_id: uuid.UUID | None = None,
    **flags: bool,
) -> EscalationStepCreate:
    if channels is None and rotation_id is None:
        channels = ["c1"]
    return EscalationStepCreate(
        step_number=number,
        delay_minutes=delay,
        channels=channels or [],
        oncall_rotation_id=rotation_id,
        **flags,
    )


async def save_policy(
    db: AsyncSession,
    steps: list[EscalationStepCreate] | None = None,
    ack_timeout_minutes: int = 30,
    critical_ack_timeout_minutes: int | None = None,
    name: str = "default",
) -> EscalationPolicy:
    """Policy with the three-step ladder 0/15/30 minutes to channel c1 by default."""
    overrides = {}
    if critical_ack_timeout_minutes is not None:
        overrides["critical"] = SeverityOverride(
            ack_timeout_minutes=critical_ack_timeout_minutes
        )
    return await create_policy(
        db,
        EscalationPolicyCreate(
            name=name,
            ack_timeout_minutes=ack_timeout_minutes,
            severity_overrides=overrides,
            steps=steps or [step(1, 0), step(2, 15), step(3, 30)],
        ),
    )
