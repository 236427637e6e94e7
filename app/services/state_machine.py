"""Project state machine: the single place where pipeline stages advance.

A transition runs in one transaction that:
    1. Locks the project row (FOR UPDATE on PostgreSQL)
    2. Validates the edge (Project.VALID_TRANSITIONS via @validates)
    3. Applies field and metadata updates
    4. Enqueues the next stage's task (NEXT_STAGE_TASKS)
    5. Enqueues an owner notification on terminal states

The status change and the next task commit together or not at all. After
commit a broadcast event announces the transition (best effort).

A transition to the status the project already has is a tolerated duplicate
(webhook redelivery, retried task): nothing changes and nothing is enqueued.
Any other illegal edge is logged and raised without mutation.

reconcile() repairs projects that sit in a stage with no task to move them
(e.g. rows written by an older process, or a stage task that died in a
stall sweep).
"""

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.constants import (
    BUILD_TRACKING_METADATA_KEYS,
    CONVERSATION_ANALYSIS_PRIORITY,
    DEFAULT_PROJECT_PRIORITY,
    MAX_PROJECT_RETRIES,
    NOTIFICATION_TASK_PRIORITY,
    RECENT_BUILD_EVENTS_LIMIT,
)
from app.exceptions import (
    InvalidPayloadError,
    InvalidStateTransitionError,
    NotFoundError,
)
from app.models import (
    BroadcastChannel,
    BuildEvent,
    EventType,
    PROJECT_STAGE_ORDER,
    Project,
    ProjectStatus,
    QueuedTask,
    TaskStatus,
    TaskType,
    utcnow,
)
from app.queue import cancel_project_tasks, enqueue
from app.services.broadcaster import BroadcastResult, EventBroadcaster
from app.utils.logging import get_logger

log = get_logger(__name__)

# Entering one of these statuses enqueues the task that performs that stage
NEXT_STAGE_TASKS: dict[ProjectStatus, TaskType] = {
    ProjectStatus.ANALYZING: TaskType.ANALYZE_CONVERSATION,
    ProjectStatus.PLANNING: TaskType.GENERATE_PLAN,
    ProjectStatus.READY_TO_BUILD: TaskType.TRIGGER_BUILD,
}

# Event announced when a project enters a status (default STATUS_CHANGED)
TRANSITION_EVENTS: dict[ProjectStatus, EventType] = {
    ProjectStatus.PLANNING: EventType.ANALYSIS_COMPLETED,
    ProjectStatus.READY_TO_BUILD: EventType.PLAN_GENERATION_COMPLETED,
    ProjectStatus.BUILDING: EventType.BUILD_TRIGGERED,
    ProjectStatus.COMPLETED: EventType.BUILD_COMPLETED,
    ProjectStatus.CANCELLED: EventType.PROJECT_CANCELLED,
}

# Project columns a transition may update alongside the status
UPDATABLE_FIELDS = frozenset(
    {"name", "description", "project_plan", "build_job_id", "build_project_id", "priority"}
)


def parse_project_id(value: uuid.UUID | str | None) -> uuid.UUID:
    """Coerce a project id from a payload or path.

    Raises:
        InvalidPayloadError: Missing or malformed id.
    """
    if isinstance(value, uuid.UUID):
        return value
    if not value:
        raise InvalidPayloadError("project_id is required")
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise InvalidPayloadError(
            f"Invalid project_id: {value}", context={"project_id": str(value)}
        ) from e


@dataclass
class TransitionResult:
    project_id: uuid.UUID
    from_status: ProjectStatus
    to_status: ProjectStatus
    changed: bool
    enqueued_task_id: uuid.UUID | None = None
    notification_task_id: uuid.UUID | None = None
    error: str | None = None
    broadcast: BroadcastResult | None = None


async def load_project(
    session: AsyncSession, project_id: uuid.UUID, *, for_update: bool = False
) -> Project:
    """Load a project fresh from the database.

    Raises:
        NotFoundError: Unknown project.
    """
    project = await session.get(
        Project, project_id, with_for_update=for_update, populate_existing=True
    )
    if project is None:
        raise NotFoundError(
            f"Project not found: {project_id}", context={"project_id": str(project_id)}
        )
    return project


async def load_project_by_conversation(session: AsyncSession, conversation_id: str) -> Project:
    """Load the project created for a conversation.

    Raises:
        NotFoundError: No project for this conversation.
    """
    project = await session.scalar(
        select(Project).where(Project.conversation_id == conversation_id)
    )
    if project is None:
        raise NotFoundError(
            f"No project for conversation: {conversation_id}",
            context={"conversation_id": conversation_id},
        )
    return project


async def recent_build_events(
    session: AsyncSession, project_id: uuid.UUID, limit: int = RECENT_BUILD_EVENTS_LIMIT
) -> list[BuildEvent]:
    """Latest build events of a project, newest first."""
    result = await session.scalars(
        select(BuildEvent)
        .where(BuildEvent.project_id == project_id)
        .order_by(BuildEvent.created_at.desc(), BuildEvent.sequence_number.desc())
        .limit(limit)
    )
    return list(result)


async def apply_transition(
    session: AsyncSession,
    project: Project,
    to_status: ProjectStatus,
    *,
    updates: dict[str, Any] | None = None,
    metadata_updates: dict[str, Any] | None = None,
    error: str | None = None,
) -> TransitionResult:
    """Apply a transition inside the caller's transaction.

    Callers that need other writes in the same transaction (build events,
    webhook bookkeeping) use this directly and announce the result after
    commit with ProjectStateMachine.announce().

    Raises:
        InvalidStateTransitionError: Edge not allowed (project untouched).
        InvalidPayloadError: Update of a field outside UPDATABLE_FIELDS.
    """
    from_status = project.status

    if from_status == to_status:
        log.info(
            "project_transition_already_applied",
            project_id=str(project.id),
            status=to_status.value,
        )
        return TransitionResult(
            project_id=project.id, from_status=from_status, to_status=to_status, changed=False
        )

    unknown = set(updates or {}) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidPayloadError(
            f"Fields cannot be updated by a transition: {sorted(unknown)}",
            context={"fields": sorted(unknown)},
        )

    try:
        project.status = to_status
    except InvalidStateTransitionError:
        log.warning(
            "invalid_project_transition",
            project_id=str(project.id),
            from_status=from_status.value,
            to_status=to_status.value,
        )
        raise

    now = utcnow()
    project.status_changed_at = now
    for key, value in (updates or {}).items():
        setattr(project, key, value)
    if metadata_updates:
        project.project_metadata = {**(project.project_metadata or {}), **metadata_updates}
    if error is not None:
        project.error_message = error
    if to_status.is_terminal:
        project.completed_at = now

    result = TransitionResult(
        project_id=project.id,
        from_status=from_status,
        to_status=to_status,
        changed=True,
        error=error,
    )

    next_task = NEXT_STAGE_TASKS.get(to_status)
    if next_task is not None:
        result.enqueued_task_id = await enqueue(
            session,
            next_task,
            {"project_id": str(project.id)},
            priority=project.priority,
            project_id=project.id,
        )

    if to_status == ProjectStatus.CANCELLED:
        await cancel_project_tasks(session, project.id)

    if to_status.is_terminal and project.owner_id:
        result.notification_task_id = await enqueue(
            session,
            TaskType.SEND_NOTIFICATION,
            {
                "project_id": str(project.id),
                "user_id": project.owner_id,
                "event_type": TRANSITION_EVENTS.get(to_status, EventType.STATUS_CHANGED).value,
                "data": {"status": to_status.value, "error": error},
            },
            priority=NOTIFICATION_TASK_PRIORITY,
            project_id=project.id,
        )

    await session.flush()

    log.info(
        "project_transitioned",
        project_id=str(project.id),
        from_status=from_status.value,
        to_status=to_status.value,
        enqueued_task_id=str(result.enqueued_task_id) if result.enqueued_task_id else None,
    )
    return result


class ProjectStateMachine:
    """Authoritative owner of Project.status.

    Args:
        session_factory: Factory for short transactions.
        broadcaster: Announces transitions after commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: EventBroadcaster,
    ) -> None:
        self.session_factory = session_factory
        self.broadcaster = broadcaster

    async def announce(self, result: TransitionResult) -> TransitionResult:
        """Broadcast a committed transition. Duplicates are not announced."""
        if not result.changed:
            return result

        event_type = TRANSITION_EVENTS.get(result.to_status, EventType.STATUS_CHANGED)
        result.broadcast = await self.broadcaster.broadcast(
            event_type,
            {
                "status": result.to_status.value,
                "previous_status": result.from_status.value,
                "error": result.error,
            },
            project_id=result.project_id,
            channel=BroadcastChannel.PROJECT_UPDATES,
        )
        return result

    async def request_analysis(
        self,
        conversation_id: str,
        *,
        transcript_url: str | None = None,
        summary: str | None = None,
        metadata: dict[str, Any] | None = None,
        owner_id: str | None = None,
        priority: int = DEFAULT_PROJECT_PRIORITY,
    ) -> tuple[Project, bool]:
        """Create the project for a conversation and queue its analysis.

        Idempotent by conversation id: a second request returns the
        existing project unchanged.

        Returns:
            (project, created)
        """
        if not conversation_id:
            raise InvalidPayloadError("conversation_id is required")

        try:
            async with self.session_factory() as session, session.begin():
                existing = await session.scalar(
                    select(Project).where(Project.conversation_id == conversation_id)
                )
                if existing is not None:
                    log.info(
                        "analysis_already_requested",
                        conversation_id=conversation_id,
                        project_id=str(existing.id),
                        status=existing.status.value,
                    )
                    return existing, False

                now = utcnow()
                project = Project(
                    id=uuid.uuid4(),
                    conversation_id=conversation_id,
                    owner_id=owner_id,
                    status=ProjectStatus.ANALYZING,
                    priority=priority,
                    project_metadata={
                        "source": {"transcript_url": transcript_url, "summary": summary},
                        "request": metadata or {},
                    },
                    created_at=now,
                    updated_at=now,
                    status_changed_at=now,
                )
                session.add(project)
                await session.flush()

                await enqueue(
                    session,
                    TaskType.ANALYZE_CONVERSATION,
                    {"project_id": str(project.id)},
                    priority=CONVERSATION_ANALYSIS_PRIORITY,
                    project_id=project.id,
                )
        except IntegrityError:
            # Concurrent request for the same conversation won the insert
            async with self.session_factory() as session:
                existing = await session.scalar(
                    select(Project).where(Project.conversation_id == conversation_id)
                )
            if existing is None:
                raise
            log.info("analysis_request_race_resolved", conversation_id=conversation_id)
            return existing, False

        log.info(
            "project_created",
            project_id=str(project.id),
            conversation_id=conversation_id,
            priority=priority,
        )
        await self.broadcaster.broadcast(
            EventType.PROJECT_CREATED,
            {"conversation_id": conversation_id, "status": ProjectStatus.ANALYZING.value},
            project_id=project.id,
            user_id=owner_id,
        )
        return project, True

    async def transition(
        self,
        project_id: uuid.UUID,
        to_status: ProjectStatus,
        *,
        updates: dict[str, Any] | None = None,
        metadata_updates: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> TransitionResult:
        """Move a project to a new status in its own transaction, then announce it."""
        async with self.session_factory() as session, session.begin():
            project = await load_project(session, project_id, for_update=True)
            result = await apply_transition(
                session,
                project,
                to_status,
                updates=updates,
                metadata_updates=metadata_updates,
                error=error,
            )
        return await self.announce(result)

    async def cancel_project(
        self, project_id: uuid.UUID, reason: str | None = None
    ) -> TransitionResult:
        """Cancel a project and its pending tasks.

        In-flight external calls are not interrupted; their handlers see the
        cancelled status before the next side effect.
        """
        return await self.transition(
            project_id,
            ProjectStatus.CANCELLED,
            metadata_updates={
                "cancellation": {
                    "reason": reason or "cancelled by request",
                    "cancelled_at": utcnow().isoformat(),
                }
            },
        )

    async def fail_project(self, project_id: uuid.UUID, error: str) -> TransitionResult | None:
        """Mark a project failed after a stage exhausted its retries.

        Returns:
            The transition, or None if the project was already terminal.
        """
        async with self.session_factory() as session, session.begin():
            project = await load_project(session, project_id, for_update=True)
            if project.status.is_terminal:
                log.info(
                    "project_failure_skipped_terminal",
                    project_id=str(project_id),
                    status=project.status.value,
                )
                return None
            result = await apply_transition(session, project, ProjectStatus.FAILED, error=error)
        return await self.announce(result)

    async def retry_project(self, project_id: uuid.UUID) -> TransitionResult:
        """Take the explicit retry edge failed → analyzing.

        Raises:
            InvalidStateTransitionError: Project not failed, or retry limit reached.
        """
        async with self.session_factory() as session, session.begin():
            project = await load_project(session, project_id, for_update=True)
            if (
                project.status == ProjectStatus.FAILED
                and project.retry_count >= MAX_PROJECT_RETRIES
            ):
                log.warning(
                    "project_retry_limit_reached",
                    project_id=str(project_id),
                    retry_count=project.retry_count,
                )
                raise InvalidStateTransitionError(
                    "Project retry limit reached",
                    from_status=project.status,
                    to_status=ProjectStatus.ANALYZING,
                )
            if project.status != ProjectStatus.FAILED:
                raise InvalidStateTransitionError(
                    "Only failed projects can be retried",
                    from_status=project.status,
                    to_status=ProjectStatus.ANALYZING,
                )

            project.retry_count += 1
            project.completed_at = None
            # The next attempt builds from scratch under a new build id
            project.build_job_id = None
            project.build_project_id = None
            project.project_plan = None
            project.project_metadata = {
                key: value
                for key, value in (project.project_metadata or {}).items()
                if key not in BUILD_TRACKING_METADATA_KEYS
            }
            result = await apply_transition(
                session,
                project,
                ProjectStatus.ANALYZING,
                metadata_updates={"last_retry_at": utcnow().isoformat()},
            )
            project.error_message = None
        return await self.announce(result)

    async def record_stage_failure(self, project_id: uuid.UUID, error: str) -> Project:
        """Count a failed stage attempt without changing status."""
        async with self.session_factory() as session, session.begin():
            project = await load_project(session, project_id, for_update=True)
            project.retry_count += 1
            project.error_message = error
        log.warning(
            "project_stage_failure_recorded",
            project_id=str(project_id),
            status=project.status.value,
            retry_count=project.retry_count,
            error=error,
        )
        return project

    async def reconcile(self) -> int:
        """Repair projects whose current stage has no task driving it.

        For every project in a stage listed in NEXT_STAGE_TASKS, looks at the
        tasks of the expected type created since the project entered that
        stage:
            - none at all → enqueue the stage task
            - only failed ones → mark the project failed with the last error

        Returns:
            Number of projects repaired.
        """
        repaired = 0
        announcements: list[TransitionResult] = []

        async with self.session_factory() as session, session.begin():
            projects = (
                await session.scalars(
                    select(Project)
                    .where(Project.status.in_(list(NEXT_STAGE_TASKS)))
                    .with_for_update(skip_locked=True)
                )
            ).all()

            for project in projects:
                task_type = NEXT_STAGE_TASKS[project.status]
                tasks = (
                    await session.scalars(
                        select(QueuedTask)
                        .where(
                            QueuedTask.project_id == project.id,
                            QueuedTask.task_type == task_type,
                            QueuedTask.created_at >= project.status_changed_at,
                        )
                        .order_by(QueuedTask.created_at.desc())
                    )
                ).all()

                if not tasks:
                    await enqueue(
                        session,
                        task_type,
                        {"project_id": str(project.id)},
                        priority=project.priority,
                        project_id=project.id,
                    )
                    log.warning(
                        "pipeline_gap_repaired",
                        project_id=str(project.id),
                        status=project.status.value,
                        task_type=task_type.value,
                    )
                    repaired += 1
                    continue

                statuses = {task.status for task in tasks}
                live = {TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.COMPLETED}
                if TaskStatus.FAILED in statuses and not statuses & live:
                    last_error = tasks[0].error_message or f"{task_type.value} failed"
                    announcements.append(
                        await apply_transition(
                            session, project, ProjectStatus.FAILED, error=last_error
                        )
                    )
                    log.warning(
                        "pipeline_stage_exhausted_repaired",
                        project_id=str(project.id),
                        task_type=task_type.value,
                    )
                    repaired += 1

        for result in announcements:
            await self.announce(result)
        return repaired


def stage_already_passed(current: ProjectStatus, stage: ProjectStatus) -> bool:
    """True if a project in `current` has moved beyond `stage` on the happy path."""
    if current == ProjectStatus.COMPLETED:
        return True
    if current not in PROJECT_STAGE_ORDER or stage not in PROJECT_STAGE_ORDER:
        return False
    return PROJECT_STAGE_ORDER.index(current) > PROJECT_STAGE_ORDER.index(stage)
