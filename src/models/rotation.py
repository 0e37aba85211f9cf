"""On-call rotation and override models."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.config import settings
from src.models.base import Base, TimestampMixin, UTCDateTime, utcnow


class OncallRotation(Base, TimestampMixin):
    """A recurring cycle of participants sharing on-call duty.

    Shift #0 starts at ``start_anchor``; every following shift starts
    ``shift_duration_minutes`` of local wall-clock time later, in
    ``timezone``. Which participant holds a shift is derived from the
    shift index on demand; nothing on this row changes as time passes.
    """

    __tablename__ = "oncall_rotations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Ordered participant user IDs; duplicates allowed
    participants: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    shift_duration_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=lambda: settings.default_shift_duration_minutes,
    )

    # IANA timezone name
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="UTC",
    )

    start_anchor: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    # Advance notice window for handoff notifications
    handoff_notification_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=lambda: settings.default_handoff_notification_minutes,
    )

    # Channel IDs that receive handoff notifications
    handoff_channels: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    last_handoff_start: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    last_handoff_notification_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<OncallRotation(id={self.id}, name={self.name!r}, "
            f"participants={len(self.participants or [])}, "
            f"shift={self.shift_duration_minutes}m, tz={self.timezone})>"
        )


class OncallOverride(Base):
    """A manual, time-bounded reassignment of a rotation.

    Covers ``[starts_at, ends_at)``. Overlapping overrides are allowed;
    the most recently created one covering an instant wins.
    """

    __tablename__ = "oncall_overrides"
    __table_args__ = (
        Index("ix_oncall_overrides_rotation_window", "rotation_id", "starts_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    rotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("oncall_rotations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Exclusive
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    def covers(self, at: datetime) -> bool:
        return self.starts_at <= at < self.ends_at

    def __repr__(self) -> str:
        return (
            f"<OncallOverride(rotation={self.rotation_id}, user={self.user_id}, "
            f"{self.starts_at.isoformat()}..{self.ends_at.isoformat()})>"
        )
