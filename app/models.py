"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the orchestration core.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    projects: One row per inbound conversation, the pipeline state machine
    queued_tasks: Durable priority queue of pipeline stage work
    blocked_ips: Durable IP block list shared by every API instance
    rate_limit_logs: Per-check log used by abuse detection and stats
    broadcast_events: Append-only audit of broadcast events
    user_notifications: Per-user notification inbox
    build_events: Append-only build-service lifecycle events
    webhook_events: Idempotency records for inbound webhook deliveries

Timestamps are timezone-aware UTC. SQLite (tests) hands them back naive,
so Python-side comparisons go through as_utc().
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from app.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase) instead of enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class ProjectStatus(enum.Enum):
    """Pipeline stages a project moves through.

    Pipeline Flow (Happy Path):
        analyzing → planning → ready_to_build → building → completed

    Failure / Cancellation:
        any non-terminal state → failed (stage retries exhausted, build failed)
        any non-terminal state → cancelled (operator or owner action)

    Retry Edge:
        failed → analyzing (explicit re-analysis of a failed project)
    """

    ANALYZING = "analyzing"
    PLANNING = "planning"
    READY_TO_BUILD = "ready_to_build"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PROJECT_STATUSES


TERMINAL_PROJECT_STATUSES = frozenset(
    {ProjectStatus.COMPLETED, ProjectStatus.FAILED, ProjectStatus.CANCELLED}
)

# Canonical order, used to decide whether a stage has already run
PROJECT_STAGE_ORDER = [
    ProjectStatus.ANALYZING,
    ProjectStatus.PLANNING,
    ProjectStatus.READY_TO_BUILD,
    ProjectStatus.BUILDING,
]


class TaskType(enum.Enum):
    """Closed set of queued work types."""

    ANALYZE_CONVERSATION = "analyze_conversation"
    GENERATE_PLAN = "generate_plan"
    TRIGGER_BUILD = "trigger_build"
    PROCESS_WEBHOOK = "process_webhook"
    SEND_NOTIFICATION = "send_notification"


class TaskStatus(enum.Enum):
    """Queue lifecycle of a QueuedTask.

    pending → processing → completed
    processing → pending (retry with backoff, stall recovery)
    pending | processing → failed (retries exhausted, permanent error)
    pending | processing → cancelled (project cancelled)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventType(enum.Enum):
    """Closed set of broadcast event types with dedicated messages."""

    PROJECT_CREATED = "project_created"
    ANALYSIS_STARTED = "analysis_started"
    ANALYSIS_COMPLETED = "analysis_completed"
    PLAN_GENERATION_STARTED = "plan_generation_started"
    PLAN_GENERATION_COMPLETED = "plan_generation_completed"
    BUILD_TRIGGERED = "build_triggered"
    BUILD_STARTED = "build_started"
    BUILD_PROGRESS = "build_progress"
    BUILD_COMPLETED = "build_completed"
    BUILD_FAILED = "build_failed"
    BUILD_CANCELLED = "build_cancelled"
    FILE_GENERATED = "file_generated"
    LOG_ENTRY = "log_entry"
    STATUS_CHANGED = "status_changed"
    PROJECT_CANCELLED = "project_cancelled"
    TASK_FAILED = "task_failed"


class BroadcastChannel(enum.Enum):
    PROJECT_UPDATES = "project_updates"
    BUILD_EVENTS = "build_events"
    USER_NOTIFICATIONS = "user_notifications"
    SYSTEM_ALERTS = "system_alerts"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


class Project(Base):
    """A software project derived from one recorded conversation.

    The status column is a state machine. Assigning a status outside
    VALID_TRANSITIONS raises InvalidStateTransitionError before anything
    reaches the database.

    Attributes:
        id: Internal UUID primary key.
        conversation_id: Conversation-provider id (unique, one project per conversation).
        owner_id: Optional user id that receives personal notifications.
        name: Human-readable project name (from analysis).
        description: Project description (from analysis).
        project_plan: Validated plan document (JSON).
        build_job_id: External build id returned by the build service.
        build_project_id: External project id returned by the build service.
        status: Pipeline stage (ProjectStatus).
        priority: 1-5, higher runs sooner.
        retry_count: Stage validation failures recorded against the project.
        error_message: Last human-readable failure.
        project_metadata: Free-form JSON (analysis, build progress, files, logs).
        status_changed_at: When status last changed (reconciliation anchor).
        last_activity_at: Last broadcast touching this project.
        completed_at: When the project reached a terminal state.
    """

    __tablename__ = "projects"

    VALID_TRANSITIONS = {
        ProjectStatus.ANALYZING: [
            ProjectStatus.PLANNING,
            ProjectStatus.FAILED,
            ProjectStatus.CANCELLED,
        ],
        ProjectStatus.PLANNING: [
            ProjectStatus.READY_TO_BUILD,
            ProjectStatus.FAILED,
            ProjectStatus.CANCELLED,
        ],
        ProjectStatus.READY_TO_BUILD: [
            ProjectStatus.BUILDING,
            ProjectStatus.FAILED,
            ProjectStatus.CANCELLED,
        ],
        ProjectStatus.BUILDING: [
            ProjectStatus.COMPLETED,
            ProjectStatus.FAILED,
            ProjectStatus.CANCELLED,
        ],
        # Explicit retry edge, only used by ProjectStateMachine.retry_project
        ProjectStatus.FAILED: [ProjectStatus.ANALYZING],
        ProjectStatus.COMPLETED: [],
        ProjectStatus.CANCELLED: [],
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    conversation_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
    )
    owner_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_plan: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    build_job_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    build_project_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[ProjectStatus] = mapped_column(
        _enum_column(ProjectStatus, "projectstatus"),
        nullable=False,
        default=ProjectStatus.ANALYZING,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    project_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    last_activity_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 5", name="ck_projects_priority_range"),
        CheckConstraint("retry_count >= 0", name="ck_projects_retry_count_non_negative"),
        Index("ix_projects_status_changed_at", "status", "status_changed_at"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: ProjectStatus) -> ProjectStatus:
        """Reject status assignments outside VALID_TRANSITIONS.

        Validation is skipped on creation (status is None) and for
        re-assignment of the current status.

        Raises:
            InvalidStateTransitionError: If the edge is not allowed.
        """
        if self.status is None or self.status == value:
            return value

        if value not in self.VALID_TRANSITIONS.get(self.status, []):
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )
        return value

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, conversation_id={self.conversation_id!r}, "
            f"status={self.status.value if self.status else None})>"
        )


class QueuedTask(Base):
    """A unit of deferred pipeline work.

    Claimed by exactly one worker at a time through a conditional UPDATE
    (see app.queue.claim_next). Ordering: priority DESC, created_at ASC.

    Attributes:
        task_type: Kind of work (TaskType).
        payload: Handler input (JSON).
        status: Queue lifecycle (TaskStatus).
        priority: 1-5, higher is claimed first.
        retry_count: Failed attempts so far, never above max_retries.
        max_retries: Retries allowed before terminal failure.
        project_id: Project the task belongs to, if any.
        claimed_by: Worker id holding the task while processing.
        available_at: Earliest time the task may be claimed (retry backoff).
        error_message: Last error captured verbatim.
    """

    __tablename__ = "queued_tasks"

    VALID_TRANSITIONS = {
        TaskStatus.PENDING: [TaskStatus.PROCESSING, TaskStatus.FAILED, TaskStatus.CANCELLED],
        TaskStatus.PROCESSING: [
            TaskStatus.COMPLETED,
            TaskStatus.PENDING,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        ],
        TaskStatus.COMPLETED: [],
        TaskStatus.FAILED: [],
        TaskStatus.CANCELLED: [],
    }

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    task_type: Mapped[TaskType] = mapped_column(
        _enum_column(TaskType, "tasktype"),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[TaskStatus] = mapped_column(
        _enum_column(TaskStatus, "taskstatus"),
        nullable=False,
        default=TaskStatus.PENDING,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    available_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("priority >= 1 AND priority <= 5", name="ck_queued_tasks_priority_range"),
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_queued_tasks_retry_count_bounded",
        ),
        # Claim query: WHERE status = 'pending' ORDER BY priority DESC, created_at ASC
        Index("ix_queued_tasks_status_priority_created", "status", "priority", "created_at"),
        Index("ix_queued_tasks_project_type", "project_id", "task_type"),
    )

    @validates("status")
    def validate_status_change(self, key: str, value: TaskStatus) -> TaskStatus:
        if self.status is None or self.status == value:
            return value

        if value not in self.VALID_TRANSITIONS.get(self.status, []):
            raise InvalidStateTransitionError(
                f"Invalid task transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )
        return value

    def __repr__(self) -> str:
        return (
            f"<QueuedTask(id={self.id}, task_type={self.task_type.value}, "
            f"status={self.status.value}, priority={self.priority})>"
        )


class BlockedIP(Base):
    """Durable IP block list entry.

    Attributes:
        ip_address: Blocked address (unique).
        reason: Reason code (SUSPICIOUS_ACTIVITY, DISTRIBUTED_ATTACK, or operator text).
        blocked_until: Expiry, NULL for a permanent block.
        is_active: False once expired or manually unblocked.
        created_by: "system" for automatic blocks, "admin" for operator blocks.
    """

    __tablename__ = "blocked_ips"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    ip_address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_by: Mapped[str] = mapped_column(String(50), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def is_in_effect(self, now: datetime) -> bool:
        """True if the block is active and permanent or not yet expired."""
        if not self.is_active:
            return False
        return self.blocked_until is None or as_utc(self.blocked_until) > now


class RateLimitLog(Base):
    """One identifier-level rate-limit check.

    Rejected rows (allowed=False) feed abuse detection; all rows feed stats.
    """

    __tablename__ = "rate_limit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    identifier: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(50), nullable=False)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_rate_limit_logs_ip_created", "client_ip", "created_at"),
        Index("ix_rate_limit_logs_allowed_created", "allowed", "created_at"),
    )


class BroadcastEvent(Base):
    """Append-only audit record of a broadcast."""

    __tablename__ = "broadcast_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)
    project_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )


class UserNotification(Base):
    """Notification addressed to a single user."""

    __tablename__ = "user_notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    project_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (Index("ix_user_notifications_user_read", "user_id", "is_read"),)


class BuildEvent(Base):
    """Append-only lifecycle event reported by the build service."""

    __tablename__ = "build_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    build_id: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    sequence_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )


class WebhookEvent(Base):
    """Inbound webhook delivery tracking for idempotency.

    Providers retry deliveries on timeouts and network errors. The
    (source, delivery_id) pair is unique, so a replayed delivery is detected
    before it is processed a second time. The payload is kept for audit.

    Note:
        Purged by housekeeping after the webhook retention window.
    """

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    delivery_id: Mapped[str] = mapped_column(String(150), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("source", "delivery_id", name="uq_webhook_events_source_delivery"),
    )
