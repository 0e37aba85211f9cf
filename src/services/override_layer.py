"""On-call overrides.

Stores and queries time-bounded manual assignments that take precedence
over a rotation's computed participant. Overlapping overrides are
accepted at write time; which one applies is decided at read time by
``select_active_override``: among overrides covering the instant, the
most recently created wins.
"""

import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import (
    InvalidRangeError,
    OverrideNotFoundError,
    RotationNotFoundError,
)
from src.logging_config import get_logger
from src.models.base import utcnow
from src.models.rotation import OncallOverride, OncallRotation

logger = get_logger(__name__)


def select_active_override(
    overrides: Sequence[OncallOverride],
    rotation_id: uuid.UUID,
    at: datetime,
) -> OncallOverride | None:
    """Pick the override that governs ``rotation_id`` at ``at``.

    Args:
        overrides: Candidate overrides (any rotation, any window).
        rotation_id: Rotation being resolved.
        at: Instant being resolved.

    Returns:
        The most recently created override whose ``[starts_at, ends_at)``
        contains ``at``, or None.
    """
    covering = [
        override
        for override in overrides
        if override.rotation_id == rotation_id and override.covers(at)
    ]
    if not covering:
        return None
    return max(covering, key=lambda override: (override.created_at, str(override.id)))


def validate_range(starts_at: datetime, ends_at: datetime) -> None:
    """Raise InvalidRangeError unless ``ends_at`` is strictly after ``starts_at``."""
    if ends_at <= starts_at:
        msg = (
            f"Override end ({ends_at.isoformat()}) must be after "
            f"start ({starts_at.isoformat()})"
        )
        raise InvalidRangeError(msg)


async def create_override(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    user_id: str,
    starts_at: datetime,
    ends_at: datetime,
    reason: str | None = None,
    created_at: datetime | None = None,
) -> OncallOverride:
    """Create an override on a rotation.

    Raises:
        InvalidRangeError: If ``ends_at <= starts_at``.
        RotationNotFoundError: If the rotation does not exist.
    """
    validate_range(starts_at, ends_at)

    rotation = await db.get(OncallRotation, rotation_id)
    if rotation is None:
        raise RotationNotFoundError(rotation_id)

    override = OncallOverride(
        rotation_id=rotation_id,
        user_id=user_id,
        starts_at=starts_at,
        ends_at=ends_at,
        reason=reason,
        created_at=created_at or utcnow(),
    )
    db.add(override)
    await db.commit()
    await db.refresh(override)

    logger.info(
        "Created on-call override",
        rotation_id=str(rotation_id),
        override_id=str(override.id),
        user_id=user_id,
        starts_at=starts_at.isoformat(),
        ends_at=ends_at.isoformat(),
    )
    return override


async def delete_override(db: AsyncSession, override_id: uuid.UUID) -> None:
    """Delete an override.

    Raises:
        OverrideNotFoundError: If no override has this ID.
    """
    result = await db.execute(
        delete(OncallOverride).where(OncallOverride.id == override_id)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise OverrideNotFoundError(override_id)
    await db.commit()

    logger.info("Deleted on-call override", override_id=str(override_id))


async def list_overrides(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    since: datetime | None = None,
) -> list[OncallOverride]:
    """Overrides on a rotation, ordered by start.

    Args:
        db: Database session.
        rotation_id: Rotation's UUID.
        since: When given, only overrides ending after this instant.
    """
    query = select(OncallOverride).where(OncallOverride.rotation_id == rotation_id)
    if since is not None:
        query = query.where(OncallOverride.ends_at > since)
    result = await db.execute(query.order_by(OncallOverride.starts_at))
    return list(result.scalars().all())


async def list_overrides_between(
    db: AsyncSession,
    rotation_ids: Sequence[uuid.UUID],
    start: datetime,
    end: datetime,
) -> list[OncallOverride]:
    """Overrides on any of ``rotation_ids`` intersecting ``[start, end]``.

    A single query, so callers resolving several instants share one
    consistent snapshot of the override table.
    """
    if not rotation_ids:
        return []
    result = await db.execute(
        select(OncallOverride).where(
            and_(
                OncallOverride.rotation_id.in_(list(rotation_ids)),
                OncallOverride.starts_at <= end,
                OncallOverride.ends_at > start,
            )
        )
    )
    return list(result.scalars().all())


async def find_active(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    at: datetime,
) -> OncallOverride | None:
    """The override governing ``rotation_id`` at ``at``, if any."""
    overrides = await list_overrides_between(db, [rotation_id], at, at)
    return select_active_override(overrides, rotation_id, at)
