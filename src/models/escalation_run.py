"""Escalation run and escalation event models.

A run is the persisted state machine driving one triggered alert through
a policy. Events are the audit trail of the steps it executed.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, UTCDateTime, utcnow
from src.models.escalation_policy import AlertSeverity


class RunStatus(str, enum.Enum):
    """Status of an escalation run."""

    NOTIFYING = "notifying"
    AWAITING_ACK = "awaiting_ack"
    ESCALATING = "escalating"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"

    @property
    def is_escalating(self) -> bool:
        """Still walking the policy; timers for it are meaningful."""
        return self in (
            RunStatus.NOTIFYING,
            RunStatus.AWAITING_ACK,
            RunStatus.ESCALATING,
        )


class DispatchStatus(str, enum.Enum):
    """Outcome of handing a step's notification to the dispatcher."""

    PENDING = "pending"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


def _enum_column(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda e: [member.value for member in e],
    )


class EscalationRun(Base):
    """Escalation state for one alert.

    At most one un-archived run exists per ``alert_id`` (partial unique
    index). ``next_fire_at`` is the persisted deadline of the run's single
    outstanding ack-timeout callback; it is cleared on acknowledge,
    resolve and exhaustion.
    """

    __tablename__ = "escalation_runs"
    __table_args__ = (
        Index(
            "uq_escalation_runs_active_alert",
            "alert_id",
            unique=True,
            postgresql_where=text("archived_at IS NULL"),
            sqlite_where=text("archived_at IS NULL"),
        ),
        Index("ix_escalation_runs_status_next_fire", "status", "next_fire_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    alert_id: Mapped[str] = mapped_column(String(255), nullable=False)

    policy_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    severity: Mapped[AlertSeverity] = mapped_column(
        _enum_column(AlertSeverity),
        nullable=False,
    )

    status: Mapped[RunStatus] = mapped_column(
        _enum_column(RunStatus),
        nullable=False,
        default=RunStatus.NOTIFYING,
    )

    current_step_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Effective ack timeout, frozen at start
    ack_timeout_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    started_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    next_fire_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    acknowledged_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    exhausted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def timer_key(self) -> str:
        return f"escalation:{self.alert_id}"

    def __repr__(self) -> str:
        return (
            f"<EscalationRun(alert={self.alert_id}, status={self.status.value}, "
            f"step_index={self.current_step_index}, next_fire_at={self.next_fire_at})>"
        )


class EscalationEvent(Base):
    """Records one executed escalation step.

    The unique constraint on (run_id, step_number) makes step execution
    idempotent across workers: a second insert loses and is discarded.
    """

    __tablename__ = "escalation_events"
    __table_args__ = (
        UniqueConstraint("run_id", "step_number", name="uq_escalation_event_step"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escalation_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    alert_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    step_number: Mapped[int] = mapped_column(Integer, nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)

    # [{"kind": "channel" | "user", "id": "..."}]
    recipients: Mapped[list[dict[str, str]]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )

    dispatch_status: Mapped[DispatchStatus] = mapped_column(
        _enum_column(DispatchStatus),
        nullable=False,
        default=DispatchStatus.PENDING,
    )

    warning: Mapped[str | None] = mapped_column(Text, nullable=True)

    triggered_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<EscalationEvent(alert={self.alert_id}, step={self.step_number}, "
            f"status={self.dispatch_status.value})>"
        )
