"""On-call rotation router.

Rotation CRUD, overrides, and the schedule views built on the resolver.
"""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import AwareDatetime
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import OncallError
from src.core.http_errors import http_error
from src.database import get_db
from src.models.base import utcnow
from src.schemas.rotation import (
    CoverageGap,
    CoverageGapsResponse,
    CurrentOncallListResponse,
    CurrentOncallResponse,
    HandoffNotificationResponse,
    OverrideCreate,
    OverrideResponse,
    RotationCreate,
    RotationResponse,
    RotationScheduleResponse,
    RotationUpdate,
    ShiftResponse,
    UpcomingHandoffsResponse,
)
from src.services import override_layer, rotation_service
from src.services.handoff_notifier import notify_handoff
from src.services.notification_dispatcher import NotificationDispatcher
from src.services.override_layer import find_active
from src.services.rotation_resolver import Assignment
from src.services.scheduler import get_dispatcher

router = APIRouter(prefix="/api/oncall", tags=["oncall"])


def _shift(assignment: Assignment) -> ShiftResponse:
    return ShiftResponse(
        user_id=assignment.participant,
        shift_start=assignment.shift_start,
        shift_end=assignment.shift_end,
        is_override=assignment.is_override,
    )


@router.get("/rotations", response_model=list[RotationResponse])
async def list_rotations(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
) -> list[RotationResponse]:
    rotations = await rotation_service.list_rotations(db, active_only=active_only)
    return [RotationResponse.model_validate(r) for r in rotations]


@router.post(
    "/rotations",
    response_model=RotationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_rotation(
    data: RotationCreate,
    db: AsyncSession = Depends(get_db),
) -> RotationResponse:
    """Create a rotation; active rotations need at least one participant."""
    try:
        rotation = await rotation_service.create_rotation(db, data)
    except OncallError as exc:
        raise http_error(exc) from exc
    return RotationResponse.model_validate(rotation)


@router.get("/rotations/{rotation_id}", response_model=RotationResponse)
async def get_rotation(
    rotation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> RotationResponse:
    try:
        rotation = await rotation_service.get_rotation(db, rotation_id)
    except OncallError as exc:
        raise http_error(exc) from exc
    return RotationResponse.model_validate(rotation)


@router.patch("/rotations/{rotation_id}", response_model=RotationResponse)
async def update_rotation(
    rotation_id: uuid.UUID,
    data: RotationUpdate,
    db: AsyncSession = Depends(get_db),
) -> RotationResponse:
    """Partially update a rotation; the merged definition is re-validated."""
    try:
        rotation = await rotation_service.update_rotation(db, rotation_id, data)
    except OncallError as exc:
        raise http_error(exc) from exc
    return RotationResponse.model_validate(rotation)


@router.delete("/rotations/{rotation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rotation(
    rotation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    try:
        await rotation_service.delete_rotation(db, rotation_id)
    except OncallError as exc:
        raise http_error(exc) from exc


@router.get("/current", response_model=CurrentOncallListResponse)
async def list_current_oncall(
    db: AsyncSession = Depends(get_db),
) -> CurrentOncallListResponse:
    """Who is on call right now, across all active rotations."""
    current = await rotation_service.list_current_oncall(db)
    rotations = [
        CurrentOncallResponse(
            rotation_id=rotation.id,
            user_id=assignment.participant,
            shift_start=assignment.shift_start,
            shift_end=assignment.shift_end,
            is_override=assignment.is_override,
        )
        for rotation, assignment in current
    ]
    return CurrentOncallListResponse(rotations=rotations, count=len(rotations))


@router.get("/rotations/{rotation_id}/current", response_model=CurrentOncallResponse)
async def get_current_oncall(
    rotation_id: uuid.UUID,
    at: AwareDatetime | None = None,
    db: AsyncSession = Depends(get_db),
) -> CurrentOncallResponse:
    """Who is on call for a rotation, now or at ``at``.

    ``user_id`` is null for inactive rotations and rotations without
    participants.
    """
    at = at or utcnow()
    try:
        assignment = await rotation_service.get_current_oncall(db, rotation_id, at)
    except OncallError as exc:
        raise http_error(exc) from exc

    reason = None
    if assignment.is_override:
        override = await find_active(db, rotation_id, at)
        reason = override.reason if override else None

    return CurrentOncallResponse(
        rotation_id=rotation_id,
        user_id=assignment.participant,
        shift_start=assignment.shift_start,
        shift_end=assignment.shift_end,
        is_override=assignment.is_override,
        reason=reason,
    )


@router.get(
    "/rotations/{rotation_id}/upcoming",
    response_model=UpcomingHandoffsResponse,
)
async def list_upcoming_handoffs(
    rotation_id: uuid.UUID,
    count: int = Query(default=5, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
) -> UpcomingHandoffsResponse:
    try:
        upcoming = await rotation_service.list_upcoming_handoffs(db, rotation_id, count)
    except OncallError as exc:
        raise http_error(exc) from exc

    handoffs = [_shift(assignment) for assignment in upcoming]
    return UpcomingHandoffsResponse(
        rotation_id=rotation_id,
        handoffs=handoffs,
        count=len(handoffs),
    )


@router.get(
    "/rotations/{rotation_id}/schedule",
    response_model=RotationScheduleResponse,
)
async def get_schedule(
    rotation_id: uuid.UUID,
    days: int = Query(default=7, ge=1, le=90),
    db: AsyncSession = Depends(get_db),
) -> RotationScheduleResponse:
    """Calendar view: computed shifts plus overrides over the next ``days``."""
    try:
        shifts, overrides = await rotation_service.get_schedule(db, rotation_id, days)
    except OncallError as exc:
        raise http_error(exc) from exc

    return RotationScheduleResponse(
        rotation_id=rotation_id,
        shifts=[_shift(shift) for shift in shifts],
        overrides=[OverrideResponse.model_validate(o) for o in overrides],
    )


@router.get(
    "/rotations/{rotation_id}/coverage",
    response_model=CoverageGapsResponse,
)
async def get_coverage_gaps(
    rotation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> CoverageGapsResponse:
    try:
        gaps = await rotation_service.get_coverage_gaps(db, rotation_id)
    except OncallError as exc:
        raise http_error(exc) from exc

    return CoverageGapsResponse(
        rotation_id=rotation_id,
        gaps=[CoverageGap(start=g.start, end=g.end, reason=g.reason) for g in gaps],
        has_gaps=bool(gaps),
    )


@router.post(
    "/rotations/{rotation_id}/handoff",
    response_model=HandoffNotificationResponse,
)
async def trigger_handoff(
    rotation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> HandoffNotificationResponse:
    """Announce the next shift boundary now.

    ``notified`` is false when that boundary was already announced.
    """
    try:
        record = await notify_handoff(db, dispatcher, rotation_id)
    except OncallError as exc:
        raise http_error(exc) from exc

    if record is None:
        return HandoffNotificationResponse(rotation_id=rotation_id, notified=False)
    return HandoffNotificationResponse(
        rotation_id=rotation_id,
        notified=True,
        shift_start=record.shift_start,
        shift_end=record.shift_end,
        incoming_user_id=record.incoming_user_id,
        outgoing_user_id=record.outgoing_user_id,
    )


@router.get(
    "/rotations/{rotation_id}/overrides",
    response_model=list[OverrideResponse],
)
async def list_overrides(
    rotation_id: uuid.UUID,
    include_past: bool = False,
    db: AsyncSession = Depends(get_db),
) -> list[OverrideResponse]:
    try:
        await rotation_service.get_rotation(db, rotation_id)
    except OncallError as exc:
        raise http_error(exc) from exc

    since: datetime | None = None if include_past else utcnow()
    overrides = await override_layer.list_overrides(db, rotation_id, since=since)
    return [OverrideResponse.model_validate(o) for o in overrides]


@router.post(
    "/rotations/{rotation_id}/overrides",
    response_model=OverrideResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_override(
    rotation_id: uuid.UUID,
    data: OverrideCreate,
    db: AsyncSession = Depends(get_db),
) -> OverrideResponse:
    """Create an override; overlapping overrides are allowed."""
    try:
        override = await override_layer.create_override(
            db,
            rotation_id=rotation_id,
            user_id=data.user_id,
            starts_at=data.starts_at,
            ends_at=data.ends_at,
            reason=data.reason,
        )
    except OncallError as exc:
        raise http_error(exc) from exc
    return OverrideResponse.model_validate(override)


@router.delete("/overrides/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_override(
    override_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> None:
    try:
        await override_layer.delete_override(db, override_id)
    except OncallError as exc:
        raise http_error(exc) from exc
