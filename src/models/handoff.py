"""Handoff notification record."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime, utcnow


class HandoffNotification(Base):
    """One handoff notice emitted for a shift boundary.

    The unique constraint on (rotation_id, shift_start) is the dedup key:
    repeated evaluation ticks never notify twice for the same boundary.
    """

    __tablename__ = "handoff_notifications"
    __table_args__ = (
        UniqueConstraint("rotation_id", "shift_start", name="uq_handoff_boundary"),
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

    shift_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    shift_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    incoming_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    outgoing_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    notified_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<HandoffNotification(rotation={self.rotation_id}, "
            f"shift_start={self.shift_start.isoformat()}, to={self.incoming_user_id})>"
        )
