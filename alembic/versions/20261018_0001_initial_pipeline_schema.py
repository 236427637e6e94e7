"""initial_pipeline_schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18

Creates the orchestration core schema:
    - projects: pipeline state machine, one row per conversation
    - queued_tasks: durable priority queue (claimed with a conditional UPDATE)
    - blocked_ips / rate_limit_logs: durable rate-limit state
    - broadcast_events / user_notifications: event audit and user inbox
    - build_events: build-service lifecycle events
    - webhook_events: delivery idempotency records

Enum values are stored lowercase (enum.value), matching app.models.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

PROJECT_STATUSES = (
    "analyzing",
    "planning",
    "ready_to_build",
    "building",
    "completed",
    "failed",
    "cancelled",
)
TASK_TYPES = (
    "analyze_conversation",
    "generate_plan",
    "trigger_build",
    "process_webhook",
    "send_notification",
)
TASK_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("conversation_id", sa.String(100), nullable=False),
        sa.Column("owner_id", sa.String(100), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("project_plan", sa.JSON(), nullable=True),
        sa.Column("build_job_id", sa.String(100), nullable=True),
        sa.Column("build_project_id", sa.String(100), nullable=True),
        sa.Column("status", sa.Enum(*PROJECT_STATUSES, name="projectstatus"), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("status_changed_at"),
        _timestamp("last_activity_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.CheckConstraint("priority >= 1 AND priority <= 5", name="ck_projects_priority_range"),
        sa.CheckConstraint("retry_count >= 0", name="ck_projects_retry_count_non_negative"),
    )
    op.create_index("ix_projects_conversation_id", "projects", ["conversation_id"], unique=True)
    op.create_index("ix_projects_owner_id", "projects", ["owner_id"])
    op.create_index("ix_projects_build_job_id", "projects", ["build_job_id"])
    op.create_index("ix_projects_status", "projects", ["status"])
    op.create_index("ix_projects_status_changed_at", "projects", ["status", "status_changed_at"])

    op.create_table(
        "queued_tasks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_type", sa.Enum(*TASK_TYPES, name="tasktype"), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.Enum(*TASK_STATUSES, name="taskstatus"), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        _timestamp("available_at", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("started_at", nullable=True),
        _timestamp("completed_at", nullable=True),
        sa.CheckConstraint(
            "priority >= 1 AND priority <= 5", name="ck_queued_tasks_priority_range"
        ),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_queued_tasks_retry_count_bounded",
        ),
    )
    op.create_index("ix_queued_tasks_project_id", "queued_tasks", ["project_id"])
    op.create_index(
        "ix_queued_tasks_status_priority_created",
        "queued_tasks",
        ["status", "priority", "created_at"],
    )
    op.create_index("ix_queued_tasks_project_type", "queued_tasks", ["project_id", "task_type"])

    op.create_table(
        "blocked_ips",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(255), nullable=False),
        _timestamp("blocked_until", nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(50), nullable=False, server_default="system"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_blocked_ips_ip_address", "blocked_ips", ["ip_address"], unique=True)
    op.create_index("ix_blocked_ips_is_active", "blocked_ips", ["is_active"])

    op.create_table(
        "rate_limit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("rule_name", sa.String(50), nullable=False),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("endpoint", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("allowed", sa.Boolean(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
    )
    op.create_index("ix_rate_limit_logs_identifier", "rate_limit_logs", ["identifier"])
    op.create_index("ix_rate_limit_logs_ip_created", "rate_limit_logs", ["client_ip", "created_at"])
    op.create_index(
        "ix_rate_limit_logs_allowed_created", "rate_limit_logs", ["allowed", "created_at"]
    )

    op.create_table(
        "broadcast_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("channel", sa.String(50), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", sa.String(100), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_broadcast_events_event_type", "broadcast_events", ["event_type"])
    op.create_index("ix_broadcast_events_project_id", "broadcast_events", ["project_id"])
    op.create_index("ix_broadcast_events_created_at", "broadcast_events", ["created_at"])

    op.create_table(
        "user_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
    )
    op.create_index("ix_user_notifications_user_id", "user_notifications", ["user_id"])
    op.create_index(
        "ix_user_notifications_user_read", "user_notifications", ["user_id", "is_read"]
    )

    op.create_table(
        "build_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("build_id", sa.String(100), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index("ix_build_events_project_id", "build_events", ["project_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("delivery_id", sa.String(150), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _timestamp("processed_at"),
        sa.UniqueConstraint("source", "delivery_id", name="uq_webhook_events_source_delivery"),
    )


def downgrade() -> None:
    for table in (
        "webhook_events",
        "build_events",
        "user_notifications",
        "broadcast_events",
        "rate_limit_logs",
        "blocked_ips",
        "queued_tasks",
        "projects",
    ):
        op.drop_table(table)

    for enum_name in ("taskstatus", "tasktype", "projectstatus"):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
