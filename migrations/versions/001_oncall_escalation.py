"""Create on-call rotation, escalation and handoff tables.

Revision ID: 001_oncall_escalation
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_oncall_escalation"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Rotations ---
    op.create_table(
        "oncall_rotations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=False),
        sa.Column("shift_duration_minutes", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("start_anchor", sa.DateTime(timezone=True), nullable=False),
        sa.Column("handoff_notification_minutes", sa.Integer(), nullable=False),
        sa.Column("handoff_channels", sa.JSON(), nullable=False),
        sa.Column("last_handoff_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_handoff_notification_at",
            sa.DateTime(timezone=True),
            nullable=True,
        ),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_oncall_rotations_active", "oncall_rotations", ["active"])

    op.create_table(
        "oncall_overrides",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "rotation_id",
            sa.Uuid(),
            sa.ForeignKey("oncall_rotations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_oncall_overrides_rotation_id", "oncall_overrides", ["rotation_id"]
    )
    op.create_index(
        "ix_oncall_overrides_rotation_window",
        "oncall_overrides",
        ["rotation_id", "starts_at"],
    )

    # --- Escalation policies ---
    op.create_table(
        "escalation_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ack_timeout_minutes", sa.Integer(), nullable=False),
        sa.Column("severity_overrides", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "escalation_steps",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "policy_id",
            sa.Uuid(),
            sa.ForeignKey("escalation_policies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("delay_minutes", sa.Integer(), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        sa.Column(
            "oncall_rotation_id",
            sa.Uuid(),
            sa.ForeignKey("oncall_rotations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("notify_on_ack_timeout", sa.Boolean(), nullable=False),
        sa.Column("skip_if_acknowledged", sa.Boolean(), nullable=False),
        sa.UniqueConstraint(
            "policy_id", "step_number", name="uq_escalation_step_number"
        ),
    )
    op.create_index(
        "ix_escalation_steps_policy_id", "escalation_steps", ["policy_id"]
    )

    # --- Escalation runs and events ---
    op.create_table(
        "escalation_runs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("alert_id", sa.String(255), nullable=False),
        sa.Column("policy_id", sa.Uuid(), nullable=False),
        sa.Column("severity", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=False),
        sa.Column("ack_timeout_minutes", sa.Integer(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_fire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exhausted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_escalation_runs_policy_id", "escalation_runs", ["policy_id"]
    )
    op.create_index(
        "ix_escalation_runs_status_next_fire",
        "escalation_runs",
        ["status", "next_fire_at"],
    )
    # One live run per alert; archived runs are kept as history
    op.create_index(
        "uq_escalation_runs_active_alert",
        "escalation_runs",
        ["alert_id"],
        unique=True,
        postgresql_where=sa.text("archived_at IS NULL"),
        sqlite_where=sa.text("archived_at IS NULL"),
    )

    op.create_table(
        "escalation_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "run_id",
            sa.Uuid(),
            sa.ForeignKey("escalation_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("alert_id", sa.String(255), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(128), nullable=False),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("dispatch_status", sa.String(32), nullable=False),
        sa.Column("warning", sa.Text(), nullable=True),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("run_id", "step_number", name="uq_escalation_event_step"),
    )
    op.create_index("ix_escalation_events_run_id", "escalation_events", ["run_id"])
    op.create_index(
        "ix_escalation_events_alert_id", "escalation_events", ["alert_id"]
    )

    # --- Handoff notifications ---
    op.create_table(
        "handoff_notifications",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "rotation_id",
            sa.Uuid(),
            sa.ForeignKey("oncall_rotations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("shift_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("shift_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("incoming_user_id", sa.String(255), nullable=True),
        sa.Column("outgoing_user_id", sa.String(255), nullable=True),
        sa.Column("manual", sa.Boolean(), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("rotation_id", "shift_start", name="uq_handoff_boundary"),
    )
    op.create_index(
        "ix_handoff_notifications_rotation_id",
        "handoff_notifications",
        ["rotation_id"],
    )


def downgrade() -> None:
    op.drop_table("handoff_notifications")
    op.drop_table("escalation_events")
    op.drop_table("escalation_runs")
    op.drop_table("escalation_steps")
    op.drop_table("escalation_policies")
    op.drop_table("oncall_overrides")
    op.drop_table("oncall_rotations")
