"""Durable priority task queue backed by the queued_tasks table.

Workers on separate hosts share this queue through the database. Claiming is
a compare-and-swap on the row's status: a single conditional UPDATE that only
succeeds while the row is still 'pending', so two claimants can never both
receive the same task. complete() and fail() given a worker_id only act
while the task is still processing under that claimant; a worker whose task
was requeued by the stall sweep gets a no-op.

Ordering:
    - Higher priority first (5 before 1)
    - FIFO within a priority tier (created_at ASC, id ASC as tie-breaker)
    - Tasks backing off after a failure are invisible until available_at

Claim statement (PostgreSQL rendering):
    UPDATE queued_tasks SET status = 'processing', claimed_by = :worker, ...
    WHERE queued_tasks.id = (
        SELECT candidate.id FROM queued_tasks AS candidate
        WHERE candidate.status = 'pending'
          AND (candidate.available_at IS NULL OR candidate.available_at <= :now)
        ORDER BY candidate.priority DESC, candidate.created_at ASC, candidate.id ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    AND queued_tasks.status = 'pending'
    RETURNING queued_tasks.id

Usage:
    from app.queue import claim_next, complete, enqueue, fail

    async with session_factory() as session, session.begin():
        task_id = await enqueue(session, TaskType.GENERATE_PLAN, {"project_id": pid}, priority=4)

    async with session_factory() as session, session.begin():
        task = await claim_next(session, worker_id="worker-1")

All functions take an AsyncSession and leave transaction control to the
caller (short transaction pattern).
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.config import (
    get_queue_max_retries,
    get_retry_base_seconds,
    get_retry_max_delay_seconds,
)
from app.exceptions import (
    InvalidPayloadError,
    InvalidStateTransitionError,
    InvalidTaskTypeError,
    NotFoundError,
)
from app.models import QueuedTask, TaskStatus, TaskType, utcnow
from app.utils.logging import get_logger

log = get_logger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 5

# Bounded retries when a concurrent claimant wins the candidate row
MAX_CLAIM_ATTEMPTS = 3

TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


@dataclass
class FailureOutcome:
    """Result of fail().

    Attributes:
        task: The updated task.
        will_retry: True if the task went back to pending.
        exhausted: True if the task is now terminally failed.
        delay_seconds: Backoff before the retry becomes claimable.
        retry_at: When the retry becomes claimable (None if exhausted).
        claim_lost: True if the reporting worker no longer held the task.
    """

    task: QueuedTask
    will_retry: bool
    exhausted: bool
    delay_seconds: int = 0
    retry_at: datetime | None = None
    claim_lost: bool = False


def parse_task_type(task_type: TaskType | str) -> TaskType:
    """Coerce a task type name into the closed TaskType enum.

    Raises:
        InvalidTaskTypeError: If the name is not a known task type.
    """
    if isinstance(task_type, TaskType):
        return task_type
    try:
        return TaskType(task_type)
    except ValueError as e:
        raise InvalidTaskTypeError(
            f"Unknown task type: {task_type}",
            context={"task_type": task_type, "valid": [t.value for t in TaskType]},
        ) from e


def compute_retry_delay(
    retry_count: int,
    base_seconds: int | None = None,
    max_delay_seconds: int | None = None,
) -> int:
    """Exponential backoff delay: base × 2^retry_count, capped.

    Args:
        retry_count: Retries already consumed before this failure.
        base_seconds: Base delay (default QUEUE_RETRY_BASE_SECONDS).
        max_delay_seconds: Cap (default QUEUE_RETRY_MAX_DELAY_SECONDS).

    Returns:
        Delay in whole seconds.

    Example:
        >>> [compute_retry_delay(n, 5, 300) for n in range(8)]
        [5, 10, 20, 40, 80, 160, 300, 300]
    """
    base = get_retry_base_seconds() if base_seconds is None else base_seconds
    cap = get_retry_max_delay_seconds() if max_delay_seconds is None else max_delay_seconds
    # Bound the exponent so huge retry counts never build huge integers
    return min(base * (2 ** min(retry_count, 32)), cap)


async def enqueue(
    session: AsyncSession,
    task_type: TaskType | str,
    payload: dict[str, Any],
    priority: int = 3,
    *,
    project_id: uuid.UUID | None = None,
    max_retries: int | None = None,
    delay_seconds: int = 0,
) -> uuid.UUID:
    """Add a task to the queue.

    Args:
        session: Active database session (caller commits).
        task_type: TaskType or its string value.
        payload: JSON-serializable handler input.
        priority: 1-5, higher is claimed first.
        project_id: Owning project, used for cancellation and reconciliation.
        max_retries: Override QUEUE_MAX_RETRIES for this task.
        delay_seconds: Hold the task back for this long before it is claimable.

    Returns:
        The new task id.

    Raises:
        InvalidTaskTypeError: Unknown task type.
        InvalidPayloadError: Priority outside 1-5 or negative max_retries.
    """
    resolved_type = parse_task_type(task_type)

    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise InvalidPayloadError(
            f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}",
            context={"priority": priority},
        )

    retries = get_queue_max_retries() if max_retries is None else max_retries
    if retries < 0:
        raise InvalidPayloadError("max_retries must be >= 0", context={"max_retries": retries})

    now = utcnow()
    task = QueuedTask(
        id=uuid.uuid4(),
        task_type=resolved_type,
        payload=payload,
        status=TaskStatus.PENDING,
        priority=priority,
        retry_count=0,
        max_retries=retries,
        project_id=project_id,
        available_at=now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None,
        created_at=now,
        updated_at=now,
    )
    session.add(task)
    await session.flush()

    log.info(
        "task_enqueued",
        task_id=str(task.id),
        task_type=resolved_type.value,
        priority=priority,
        project_id=str(project_id) if project_id else None,
        delay_seconds=delay_seconds,
    )
    return task.id


async def claim_next(session: AsyncSession, worker_id: str) -> QueuedTask | None:
    """Atomically claim the next claimable task.

    The candidate subquery picks the best pending row; the outer UPDATE only
    applies while that row is still pending. If another worker got there
    first, the UPDATE matches nothing and the next candidate is tried.

    Args:
        session: Active database session (caller commits).
        worker_id: Claimant recorded on the task.

    Returns:
        The claimed task (status processing), or None if the queue is empty.
    """
    for _ in range(MAX_CLAIM_ATTEMPTS):
        now = utcnow()
        candidate = aliased(QueuedTask)
        candidate_id = (
            select(candidate.id)
            .where(
                candidate.status == TaskStatus.PENDING,
                or_(candidate.available_at.is_(None), candidate.available_at <= now),
            )
            .order_by(candidate.priority.desc(), candidate.created_at.asc(), candidate.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        result = await session.execute(
            update(QueuedTask)
            .where(QueuedTask.id == candidate_id, QueuedTask.status == TaskStatus.PENDING)
            .values(
                status=TaskStatus.PROCESSING,
                claimed_by=worker_id,
                started_at=now,
                updated_at=now,
            )
            .returning(QueuedTask.id)
            .execution_options(synchronize_session=False)
        )
        claimed_id = result.scalar_one_or_none()

        if claimed_id is not None:
            task = await session.get(QueuedTask, claimed_id, populate_existing=True)
            log.info(
                "task_claimed",
                task_id=str(claimed_id),
                task_type=task.task_type.value,
                priority=task.priority,
                retry_count=task.retry_count,
                worker_id=worker_id,
            )
            return task

        # Either the queue is empty or a concurrent claimant won the row
        remaining = await session.scalar(
            select(func.count())
            .select_from(QueuedTask)
            .where(
                QueuedTask.status == TaskStatus.PENDING,
                or_(QueuedTask.available_at.is_(None), QueuedTask.available_at <= now),
            )
        )
        if not remaining:
            return None

        log.debug("task_claim_lost_race", worker_id=worker_id, pending=remaining)

    return None


async def _get_task(session: AsyncSession, task_id: uuid.UUID) -> QueuedTask:
    task = await session.scalar(
        select(QueuedTask)
        .where(QueuedTask.id == task_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if task is None:
        raise NotFoundError(f"Task not found: {task_id}", context={"task_id": str(task_id)})
    return task


def _claim_lost(task: QueuedTask, worker_id: str | None, action: str) -> bool:
    """True if worker_id no longer holds the task (stall sweep requeued it)."""
    if worker_id is None:
        return False
    if task.status == TaskStatus.PROCESSING and task.claimed_by == worker_id:
        return False
    log.warning(
        "task_claim_lost",
        task_id=str(task.id),
        action=action,
        worker_id=worker_id,
        status=task.status.value,
        claimed_by=task.claimed_by,
    )
    return True


async def complete(
    session: AsyncSession, task_id: uuid.UUID, worker_id: str | None = None
) -> QueuedTask | None:
    """Mark a processing task completed.

    Completing an already-completed task is a no-op. With worker_id, the
    task is only completed while that worker still holds the claim;
    otherwise nothing changes and None is returned.

    Raises:
        NotFoundError: Unknown task id.
        InvalidStateTransitionError: Task is not processing (and not already completed).
    """
    task = await _get_task(session, task_id)
    if task.status == TaskStatus.COMPLETED:
        log.info("task_already_completed", task_id=str(task_id))
        return task
    if _claim_lost(task, worker_id, "complete"):
        return None

    now = utcnow()
    task.status = TaskStatus.COMPLETED
    task.completed_at = now
    task.error_message = None
    await session.flush()

    log.info("task_completed", task_id=str(task_id), task_type=task.task_type.value)
    return task


async def fail(
    session: AsyncSession,
    task_id: uuid.UUID,
    error: str,
    *,
    retryable: bool = True,
    worker_id: str | None = None,
) -> FailureOutcome:
    """Record a failed attempt.

    A retryable failure with retries left consumes one retry and returns the
    task to pending behind an exponential backoff. Otherwise the task becomes
    terminally failed with the error captured verbatim.

    Args:
        session: Active database session (caller commits).
        task_id: Task that failed.
        error: Error text (stored verbatim).
        retryable: False for permanent errors (validation, bad payload).
        worker_id: Claimant reporting the failure. When given and the claim
            was lost, nothing changes and the outcome has claim_lost set.

    Returns:
        FailureOutcome describing what happened.

    Raises:
        NotFoundError: Unknown task id.
        InvalidStateTransitionError: Task already terminal.
    """
    task = await _get_task(session, task_id)
    if task.status not in TERMINAL_TASK_STATUSES and _claim_lost(task, worker_id, "fail"):
        return FailureOutcome(task=task, will_retry=False, exhausted=False, claim_lost=True)
    if task.status in TERMINAL_TASK_STATUSES:
        raise InvalidStateTransitionError(
            f"Cannot fail task in terminal state {task.status.value}",
            from_status=task.status,
            to_status=TaskStatus.FAILED,
        )

    now = utcnow()
    task.error_message = error
    task.claimed_by = None

    if retryable and task.retry_count < task.max_retries:
        delay = compute_retry_delay(task.retry_count)
        retry_at = now + timedelta(seconds=delay)
        task.retry_count += 1
        task.status = TaskStatus.PENDING
        task.started_at = None
        task.available_at = retry_at
        await session.flush()

        log.warning(
            "task_retry_scheduled",
            task_id=str(task_id),
            task_type=task.task_type.value,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            delay_seconds=delay,
            error=error,
        )
        return FailureOutcome(
            task=task, will_retry=True, exhausted=False, delay_seconds=delay, retry_at=retry_at
        )

    task.status = TaskStatus.FAILED
    task.completed_at = now
    await session.flush()

    log.error(
        "task_failed_permanently",
        task_id=str(task_id),
        task_type=task.task_type.value,
        retry_count=task.retry_count,
        max_retries=task.max_retries,
        retryable=retryable,
        error=error,
    )
    return FailureOutcome(task=task, will_retry=False, exhausted=True)


async def cancel(session: AsyncSession, task_id: uuid.UUID, reason: str) -> QueuedTask:
    """Mark a pending or processing task cancelled."""
    task = await _get_task(session, task_id)
    if task.status == TaskStatus.CANCELLED:
        return task

    task.status = TaskStatus.CANCELLED
    task.completed_at = utcnow()
    task.claimed_by = None
    task.error_message = reason
    await session.flush()

    log.info("task_cancelled", task_id=str(task_id), reason=reason)
    return task


async def cancel_project_tasks(
    session: AsyncSession, project_id: uuid.UUID, reason: str = "project cancelled"
) -> int:
    """Cancel every pending task belonging to a project.

    Processing tasks are left alone; their handler notices the cancelled
    project before its next external call.

    Returns:
        Number of tasks cancelled.
    """
    now = utcnow()
    result = await session.execute(
        update(QueuedTask)
        .where(QueuedTask.project_id == project_id, QueuedTask.status == TaskStatus.PENDING)
        .values(status=TaskStatus.CANCELLED, completed_at=now, updated_at=now, error_message=reason)
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount or 0
    if cancelled:
        log.info("project_tasks_cancelled", project_id=str(project_id), count=cancelled)
    return cancelled


async def requeue_stalled(session: AsyncSession, stall_timeout_seconds: int) -> int:
    """Recover tasks stuck in processing (worker crash or lost connection).

    A stalled task counts as one failed attempt, so a task that keeps
    crashing its worker still ends up failed after max_retries.

    Args:
        session: Active database session (caller commits).
        stall_timeout_seconds: How long a task may be processing.

    Returns:
        Number of tasks recovered (requeued or failed).
    """
    now = utcnow()
    threshold = now - timedelta(seconds=stall_timeout_seconds)
    message = f"Stalled in processing for more than {stall_timeout_seconds}s"

    requeued = await session.execute(
        update(QueuedTask)
        .where(
            QueuedTask.status == TaskStatus.PROCESSING,
            QueuedTask.started_at < threshold,
            QueuedTask.retry_count < QueuedTask.max_retries,
        )
        .values(
            status=TaskStatus.PENDING,
            retry_count=QueuedTask.retry_count + 1,
            claimed_by=None,
            started_at=None,
            available_at=None,
            updated_at=now,
            error_message=message,
        )
        .execution_options(synchronize_session=False)
    )
    failed = await session.execute(
        update(QueuedTask)
        .where(
            QueuedTask.status == TaskStatus.PROCESSING,
            QueuedTask.started_at < threshold,
            QueuedTask.retry_count >= QueuedTask.max_retries,
        )
        .values(
            status=TaskStatus.FAILED,
            claimed_by=None,
            completed_at=now,
            updated_at=now,
            error_message=message,
        )
        .execution_options(synchronize_session=False)
    )

    requeued_count = requeued.rowcount or 0
    failed_count = failed.rowcount or 0
    if requeued_count or failed_count:
        log.warning(
            "stalled_tasks_recovered",
            requeued=requeued_count,
            failed=failed_count,
            stall_timeout_seconds=stall_timeout_seconds,
        )
    return requeued_count + failed_count


async def get_queue_stats(session: AsyncSession) -> dict[str, int]:
    """Count tasks per status (every status present, zero if none)."""
    result = await session.execute(
        select(QueuedTask.status, func.count()).group_by(QueuedTask.status)
    )
    stats = {status.value: 0 for status in TaskStatus}
    for status, count in result.all():
        stats[status.value] = count
    return stats
