"""Escalation policy service.

Policy CRUD. Every invariant is re-checked here so that callers outside
the HTTP layer get the same InvalidConfigError the schemas would give.
"""

import uuid
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import InvalidConfigError, PolicyNotFoundError
from src.logging_config import get_logger
from src.models.escalation_policy import AlertSeverity, EscalationPolicy, EscalationStep
from src.schemas.escalation_policy import (
    EscalationPolicyCreate,
    EscalationPolicyUpdate,
    EscalationStepCreate,
    SeverityOverride,
)

logger = get_logger(__name__)


def validate_steps(steps: Sequence[EscalationStepCreate]) -> None:
    """Raise InvalidConfigError on an empty, duplicated or recipient-less step list."""
    if not steps:
        msg = "An escalation policy needs at least one step"
        raise InvalidConfigError(msg)

    seen: set[int] = set()
    for step in steps:
        if step.step_number in seen:
            msg = f"Duplicate step_number {step.step_number}"
            raise InvalidConfigError(msg)
        seen.add(step.step_number)

        if step.delay_minutes < 0:
            msg = f"Step {step.step_number}: delay_minutes must be >= 0"
            raise InvalidConfigError(msg)

        if not step.channels and step.oncall_rotation_id is None:
            msg = (
                f"Step {step.step_number}: either channels or "
                f"oncall_rotation_id must be provided"
            )
            raise InvalidConfigError(msg)


def _serialize_overrides(
    overrides: dict[AlertSeverity, SeverityOverride],
) -> dict[str, dict[str, int]]:
    serialized = {}
    for severity, override in overrides.items():
        if override.ack_timeout_minutes is None:
            continue
        if override.ack_timeout_minutes < 0:
            msg = f"{severity.value}: ack_timeout_minutes must be >= 0"
            raise InvalidConfigError(msg)
        serialized[severity.value] = {"ack_timeout_minutes": override.ack_timeout_minutes}
    return serialized


def _build_steps(steps: Sequence[EscalationStepCreate]) -> list[EscalationStep]:
    return [
        EscalationStep(
            step_number=step.step_number,
            delay_minutes=step.delay_minutes,
            channels=list(step.channels),
            oncall_rotation_id=step.oncall_rotation_id,
            notify_on_ack_timeout=step.notify_on_ack_timeout,
            skip_if_acknowledged=step.skip_if_acknowledged,
        )
        for step in sorted(steps, key=lambda s: s.step_number)
    ]


async def get_policy(db: AsyncSession, policy_id: uuid.UUID) -> EscalationPolicy:
    """Load a policy with its steps.

    Raises:
        PolicyNotFoundError: If no policy has this ID.
    """
    policy = await db.get(EscalationPolicy, policy_id)
    if policy is None:
        raise PolicyNotFoundError(policy_id)
    return policy


async def list_policies(db: AsyncSession) -> list[EscalationPolicy]:
    result = await db.execute(select(EscalationPolicy).order_by(EscalationPolicy.name))
    return list(result.scalars().all())


async def create_policy(
    db: AsyncSession,
    data: EscalationPolicyCreate,
) -> EscalationPolicy:
    """Create a policy and its steps.

    Raises:
        InvalidConfigError: If a step or timeout is malformed.
    """
    validate_steps(data.steps)
    if data.ack_timeout_minutes < 0:
        msg = "ack_timeout_minutes must be >= 0"
        raise InvalidConfigError(msg)

    policy = EscalationPolicy(
        name=data.name,
        description=data.description,
        ack_timeout_minutes=data.ack_timeout_minutes,
        severity_overrides=_serialize_overrides(data.severity_overrides),
        active=data.active,
        steps=_build_steps(data.steps),
    )
    db.add(policy)
    await db.commit()
    await db.refresh(policy)

    logger.info(
        "Created escalation policy",
        policy_id=str(policy.id),
        steps=len(data.steps),
        ack_timeout_minutes=policy.ack_timeout_minutes,
    )
    return policy


async def update_policy(
    db: AsyncSession,
    policy_id: uuid.UUID,
    updates: EscalationPolicyUpdate,
) -> EscalationPolicy:
    """Apply a partial update; a provided step list replaces the old one.

    Runs already in flight keep the ack timeout frozen at their start but
    see the new step list from their next transition on.

    Raises:
        PolicyNotFoundError: If no policy has this ID.
        InvalidConfigError: If the new steps are malformed.
    """
    policy = await get_policy(db, policy_id)
    fields = updates.model_fields_set

    if updates.steps is not None:
        validate_steps(updates.steps)
        policy.steps.clear()
        await db.flush()
        policy.steps.extend(_build_steps(updates.steps))

    if updates.severity_overrides is not None:
        policy.severity_overrides = _serialize_overrides(updates.severity_overrides)

    for field in ("name", "ack_timeout_minutes", "active"):
        value = getattr(updates, field)
        if value is not None:
            setattr(policy, field, value)
    if "description" in fields:
        policy.description = updates.description

    await db.commit()
    await db.refresh(policy)

    logger.info(
        "Updated escalation policy",
        policy_id=str(policy_id),
        fields=sorted(fields),
    )
    return policy


async def delete_policy(db: AsyncSession, policy_id: uuid.UUID) -> None:
    """Delete a policy and its steps.

    Raises:
        PolicyNotFoundError: If no policy has this ID.
    """
    policy = await get_policy(db, policy_id)
    await db.delete(policy)
    await db.commit()

    logger.info("Deleted escalation policy", policy_id=str(policy_id))
