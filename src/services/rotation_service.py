"""On-call rotation service.

Rotation CRUD with write-time validation, and the read operations built
on the resolver: current on-call, upcoming handoffs, calendar view and
coverage gaps.
"""

import uuid
import zoneinfo
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import InvalidConfigError, RotationNotFoundError
from src.logging_config import get_logger
from src.models.base import utcnow
from src.models.handoff import HandoffNotification
from src.models.rotation import OncallOverride, OncallRotation
from src.schemas.rotation import (
    MAX_SHIFT_MINUTES,
    MIN_SHIFT_MINUTES,
    RotationCreate,
    RotationUpdate,
)
from src.services.override_layer import list_overrides, list_overrides_between
from src.services.rotation_resolver import (
    Assignment,
    current_assignment,
    shifts_between,
    upcoming_assignments,
)

logger = get_logger(__name__)

MAX_SCHEDULE_DAYS = 90


@dataclass(frozen=True)
class CoverageGapInfo:
    start: datetime
    end: datetime
    reason: str


def validate_rotation_config(
    participants: list[str],
    shift_duration_minutes: int,
    timezone: str,
    active: bool,
) -> None:
    """Check rotation invariants before anything is stored.

    Raises:
        InvalidConfigError: On an active rotation without participants,
            a shift duration outside 60..10080 minutes, or an unknown
            timezone.
    """
    if active and not participants:
        msg = "An active rotation needs at least one participant"
        raise InvalidConfigError(msg)

    if any(not participant for participant in participants):
        msg = "Participant IDs must be non-empty"
        raise InvalidConfigError(msg)

    if not MIN_SHIFT_MINUTES <= shift_duration_minutes <= MAX_SHIFT_MINUTES:
        msg = (
            f"shift_duration_minutes ({shift_duration_minutes}) must be between "
            f"{MIN_SHIFT_MINUTES} and {MAX_SHIFT_MINUTES}"
        )
        raise InvalidConfigError(msg)

    try:
        zoneinfo.ZoneInfo(timezone)
    except (KeyError, ValueError, zoneinfo.ZoneInfoNotFoundError):
        msg = f"Invalid timezone: {timezone}"
        raise InvalidConfigError(msg)


async def get_rotation(db: AsyncSession, rotation_id: uuid.UUID) -> OncallRotation:
    """Load a rotation.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
    """
    rotation = await db.get(OncallRotation, rotation_id)
    if rotation is None:
        raise RotationNotFoundError(rotation_id)
    return rotation


async def list_rotations(
    db: AsyncSession,
    active_only: bool = False,
) -> list[OncallRotation]:
    query = select(OncallRotation)
    if active_only:
        query = query.where(OncallRotation.active.is_(True))
    result = await db.execute(query.order_by(OncallRotation.name))
    return list(result.scalars().all())


async def create_rotation(
    db: AsyncSession,
    data: RotationCreate,
) -> OncallRotation:
    """Create a rotation.

    Raises:
        InvalidConfigError: If the definition violates rotation invariants.
    """
    validate_rotation_config(
        data.participants,
        data.shift_duration_minutes,
        data.timezone,
        data.active,
    )

    rotation = OncallRotation(
        name=data.name,
        description=data.description,
        participants=list(data.participants),
        shift_duration_minutes=data.shift_duration_minutes,
        timezone=data.timezone,
        start_anchor=data.start_anchor or utcnow(),
        handoff_notification_minutes=data.handoff_notification_minutes,
        handoff_channels=list(data.handoff_channels),
        active=data.active,
    )
    db.add(rotation)
    await db.commit()
    await db.refresh(rotation)

    logger.info(
        "Created on-call rotation",
        rotation_id=str(rotation.id),
        participants=len(rotation.participants),
        shift_duration_minutes=rotation.shift_duration_minutes,
        timezone=rotation.timezone,
    )
    return rotation


async def update_rotation(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    updates: RotationUpdate,
) -> OncallRotation:
    """Apply a partial update, validating the merged definition.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
        InvalidConfigError: If the merged definition is invalid.
    """
    rotation = await get_rotation(db, rotation_id)
    # description may be cleared; other fields ignore explicit nulls
    update_data = {
        field: value
        for field, value in updates.model_dump(exclude_unset=True).items()
        if value is not None or field == "description"
    }

    # Merge new values with existing, keeping existing for unset fields
    validate_rotation_config(
        update_data.get("participants", rotation.participants),
        update_data.get("shift_duration_minutes", rotation.shift_duration_minutes),
        update_data.get("timezone", rotation.timezone),
        update_data.get("active", rotation.active),
    )

    for field, value in update_data.items():
        setattr(rotation, field, value)

    await db.commit()
    await db.refresh(rotation)

    logger.info(
        "Updated on-call rotation",
        rotation_id=str(rotation_id),
        fields=list(update_data.keys()),
    )
    return rotation


async def delete_rotation(db: AsyncSession, rotation_id: uuid.UUID) -> None:
    """Delete a rotation together with its overrides and handoff records.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
    """
    rotation = await get_rotation(db, rotation_id)
    await db.execute(
        delete(OncallOverride).where(OncallOverride.rotation_id == rotation_id)
    )
    await db.execute(
        delete(HandoffNotification).where(HandoffNotification.rotation_id == rotation_id)
    )
    await db.delete(rotation)
    await db.commit()

    logger.info("Deleted on-call rotation", rotation_id=str(rotation_id))


async def resolve_assignment(
    db: AsyncSession,
    rotation: OncallRotation,
    at: datetime,
) -> Assignment:
    """Resolve ``rotation`` at ``at`` against one snapshot of its overrides."""
    overrides = await list_overrides_between(db, [rotation.id], at, at)
    return current_assignment(rotation, at, overrides)


async def get_current_oncall(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    at: datetime | None = None,
) -> Assignment:
    """Who is on call for a rotation.

    Args:
        db: Database session.
        rotation_id: Rotation's UUID.
        at: Instant to resolve; defaults to now.

    Returns:
        The assignment; ``participant`` is None for inactive rotations
        and rotations without participants.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
    """
    rotation = await get_rotation(db, rotation_id)
    return await resolve_assignment(db, rotation, at or utcnow())


async def list_current_oncall(
    db: AsyncSession,
    at: datetime | None = None,
) -> list[tuple[OncallRotation, Assignment]]:
    """Current on-call across all active rotations.

    Rotations resolving to no participant are left out.
    """
    at = at or utcnow()
    rotations = await list_rotations(db, active_only=True)
    overrides = await list_overrides_between(db, [r.id for r in rotations], at, at)

    current = []
    for rotation in rotations:
        assignment = current_assignment(rotation, at, overrides)
        if assignment.participant is None:
            continue
        current.append((rotation, assignment))
    return current


async def list_upcoming_handoffs(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    count: int,
    at: datetime | None = None,
) -> list[Assignment]:
    """The next ``count`` shift boundaries of a rotation, overrides applied.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
    """
    at = at or utcnow()
    rotation = await get_rotation(db, rotation_id)
    overrides = await list_overrides(db, rotation_id, since=at)
    return list(upcoming_assignments(rotation, at, count, overrides))


async def get_schedule(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    days: int = 7,
    at: datetime | None = None,
) -> tuple[list[Assignment], list[OncallOverride]]:
    """Calendar view: computed shifts over the next ``days`` and the
    overrides intersecting that horizon.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
        InvalidConfigError: If ``days`` is outside 1..90.
    """
    if not 1 <= days <= MAX_SCHEDULE_DAYS:
        msg = f"days ({days}) must be between 1 and {MAX_SCHEDULE_DAYS}"
        raise InvalidConfigError(msg)

    at = at or utcnow()
    horizon = at + timedelta(days=days)
    rotation = await get_rotation(db, rotation_id)
    shifts = list(shifts_between(rotation, at, horizon))
    overrides = await list_overrides_between(db, [rotation_id], at, horizon)
    return shifts, sorted(overrides, key=lambda o: o.starts_at)


async def get_coverage_gaps(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    at: datetime | None = None,
) -> list[CoverageGapInfo]:
    """Report windows where the rotation is not covering as configured.

    Raises:
        RotationNotFoundError: If no rotation has this ID.
    """
    at = at or utcnow()
    rotation = await get_rotation(db, rotation_id)
    shift = timedelta(minutes=rotation.shift_duration_minutes)
    gaps = []

    if not rotation.active:
        gaps.append(CoverageGapInfo(at, at + shift, "Rotation is inactive"))

    if not rotation.participants:
        gaps.append(
            CoverageGapInfo(
                rotation.start_anchor,
                rotation.start_anchor + shift,
                "No participants configured",
            )
        )

    assignment = await resolve_assignment(db, rotation, at)
    if assignment.is_override and assignment.participant not in rotation.participants:
        gaps.append(
            CoverageGapInfo(
                assignment.shift_start,
                assignment.shift_end,
                "Override user not in participant list",
            )
        )

    return gaps
