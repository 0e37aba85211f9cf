"""Escalation policy and step models."""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.config import settings
from src.models.base import Base, TimestampMixin


class AlertSeverity(str, enum.Enum):
    """Severity an alert is triggered with."""

    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class EscalationPolicy(Base, TimestampMixin):
    """An ordered list of notification steps for an unacknowledged alert.

    ``severity_overrides`` maps a severity value to
    ``{"ack_timeout_minutes": int}`` and replaces ``ack_timeout_minutes``
    for runs started with that severity.
    """

    __tablename__ = "escalation_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    ack_timeout_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=lambda: settings.default_ack_timeout_minutes,
    )

    severity_overrides: Mapped[dict[str, dict[str, int]]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    steps: Mapped[list["EscalationStep"]] = relationship(
        "EscalationStep",
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="EscalationStep.step_number",
        lazy="selectin",
    )

    def effective_ack_timeout(self, severity: AlertSeverity | str) -> int:
        """Ack timeout in minutes for a run started with ``severity``."""
        key = severity.value if isinstance(severity, AlertSeverity) else severity
        override = (self.severity_overrides or {}).get(key) or {}
        minutes = override.get("ack_timeout_minutes")
        return self.ack_timeout_minutes if minutes is None else minutes

    def ordered_steps(self) -> list["EscalationStep"]:
        return sorted(self.steps, key=lambda step: step.step_number)

    def __repr__(self) -> str:
        return (
            f"<EscalationPolicy(id={self.id}, name={self.name!r}, "
            f"steps={len(self.steps)}, ack={self.ack_timeout_minutes}m)>"
        )


class EscalationStep(Base):
    """One stage of an escalation policy.

    ``delay_minutes`` is an offset from run start, not from the previous
    step. A step must name at least one channel or an on-call rotation.
    """

    __tablename__ = "escalation_steps"
    __table_args__ = (
        UniqueConstraint("policy_id", "step_number", name="uq_escalation_step_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escalation_policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    step_number: Mapped[int] = mapped_column(Integer, nullable=False)

    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    channels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    oncall_rotation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("oncall_rotations.id", ondelete="SET NULL"),
        nullable=True,
    )

    notify_on_ack_timeout: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    skip_if_acknowledged: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    policy = relationship("EscalationPolicy", back_populates="steps")

    def __repr__(self) -> str:
        return (
            f"<EscalationStep(step={self.step_number}, delay={self.delay_minutes}m, "
            f"channels={len(self.channels or [])}, rotation={self.oncall_rotation_id})>"
        )
