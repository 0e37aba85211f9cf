"""On-call rotation and override schemas."""

import uuid
import zoneinfo
from datetime import datetime
from typing import Annotated

from pydantic import AfterValidator, AwareDatetime, BaseModel, Field, model_validator

from src.config import settings

MIN_SHIFT_MINUTES = 60
MAX_SHIFT_MINUTES = 10080  # one week


def _validate_timezone(value: str) -> str:
    try:
        zoneinfo.ZoneInfo(value)
    except (KeyError, ValueError, zoneinfo.ZoneInfoNotFoundError):
        msg = f"Invalid timezone: {value}"
        raise ValueError(msg)
    return value


TimezoneName = Annotated[str, AfterValidator(_validate_timezone)]


class RotationCreate(BaseModel):
    """Request schema for creating a rotation."""

    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    participants: list[str] = Field(default_factory=list)
    shift_duration_minutes: int = Field(
        default_factory=lambda: settings.default_shift_duration_minutes,
        ge=MIN_SHIFT_MINUTES,
        le=MAX_SHIFT_MINUTES,
        description="Shift length in minutes (60-10080).",
    )
    timezone: TimezoneName = Field(
        default="UTC",
        description="IANA timezone (e.g. 'America/New_York').",
    )
    start_anchor: AwareDatetime | None = Field(
        default=None,
        description="Start of shift #0. Defaults to now.",
    )
    handoff_notification_minutes: int = Field(
        default_factory=lambda: settings.default_handoff_notification_minutes,
        ge=5,
        le=1440,
    )
    handoff_channels: list[str] = Field(default_factory=list)
    active: bool = True


class RotationUpdate(BaseModel):
    """Request schema for updating a rotation.

    All fields are optional -- only provided fields are updated.
    """

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    participants: list[str] | None = None
    shift_duration_minutes: int | None = Field(
        default=None,
        ge=MIN_SHIFT_MINUTES,
        le=MAX_SHIFT_MINUTES,
    )
    timezone: TimezoneName | None = None
    start_anchor: AwareDatetime | None = None
    handoff_notification_minutes: int | None = Field(default=None, ge=5, le=1440)
    handoff_channels: list[str] | None = None
    active: bool | None = None


class RotationResponse(BaseModel):
    """Response schema for a rotation."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    name: str
    description: str | None
    participants: list[str]
    shift_duration_minutes: int
    timezone: str
    start_anchor: datetime
    handoff_notification_minutes: int
    handoff_channels: list[str]
    last_handoff_start: datetime | None
    last_handoff_notification_at: datetime | None
    active: bool
    created_at: datetime
    updated_at: datetime


class OverrideCreate(BaseModel):
    """Request schema for creating an override."""

    user_id: str = Field(min_length=1, max_length=255)
    starts_at: AwareDatetime
    ends_at: AwareDatetime
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_window(self) -> "OverrideCreate":
        """Ensure the override window is non-empty."""
        if self.ends_at <= self.starts_at:
            msg = "ends_at must be after starts_at"
            raise ValueError(msg)
        return self


class OverrideResponse(BaseModel):
    """Response schema for an override."""

    model_config = {"from_attributes": True}

    id: uuid.UUID
    rotation_id: uuid.UUID
    user_id: str
    starts_at: datetime
    ends_at: datetime
    reason: str | None
    created_at: datetime


class CurrentOncallResponse(BaseModel):
    """Who is on call for a rotation right now."""

    rotation_id: uuid.UUID
    user_id: str | None
    shift_start: datetime | None
    shift_end: datetime | None
    is_override: bool
    reason: str | None = None


class CurrentOncallListResponse(BaseModel):
    """On-call users across all active rotations."""

    rotations: list[CurrentOncallResponse]
    count: int


class ShiftResponse(BaseModel):
    """One shift of a rotation."""

    user_id: str | None
    shift_start: datetime
    shift_end: datetime
    is_override: bool = False


class UpcomingHandoffsResponse(BaseModel):
    """Next shift boundaries of a rotation."""

    rotation_id: uuid.UUID
    handoffs: list[ShiftResponse]
    count: int


class RotationScheduleResponse(BaseModel):
    """Calendar view of a rotation over a horizon."""

    rotation_id: uuid.UUID
    shifts: list[ShiftResponse]
    overrides: list[OverrideResponse]


class CoverageGap(BaseModel):
    """A window where the rotation does not provide coverage as configured."""

    start: datetime
    end: datetime
    reason: str


class CoverageGapsResponse(BaseModel):
    """Coverage gap report for a rotation."""

    rotation_id: uuid.UUID
    gaps: list[CoverageGap]
    has_gaps: bool


class HandoffNotificationResponse(BaseModel):
    """Outcome of a manual handoff trigger."""

    rotation_id: uuid.UUID
    notified: bool
    shift_start: datetime | None = None
    shift_end: datetime | None = None
    incoming_user_id: str | None = None
    outgoing_user_id: str | None = None
