"""Tests for the durable task queue (app/queue.py).

Tests cover:
    - enqueue validation (task type, priority range)
    - Claim ordering: priority DESC, FIFO within a tier
    - Single claimant per task
    - Retry backoff and terminal failure
    - Stalled task recovery
    - Project task cancellation and queue stats

Priority: P0 - Every pipeline stage runs through the queue.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.database import create_test_engine
from app.exceptions import InvalidPayloadError, InvalidStateTransitionError, InvalidTaskTypeError
from app.models import Base, QueuedTask, TaskStatus, TaskType, utcnow
from app.queue import (
    cancel,
    cancel_project_tasks,
    claim_next,
    complete,
    compute_retry_delay,
    enqueue,
    fail,
    get_queue_stats,
    parse_task_type,
    requeue_stalled,
)


async def _enqueue(
    session_factory, task_type=TaskType.GENERATE_PLAN, n: int = 0, **kwargs
) -> uuid.UUID:
    async with session_factory() as session, session.begin():
        return await enqueue(session, task_type, {"n": n}, **kwargs)


async def _claim(session_factory, worker_id: str = "worker-1") -> QueuedTask | None:
    async with session_factory() as session, session.begin():
        return await claim_next(session, worker_id)


async def _stall_and_requeue(session_factory, task_id: uuid.UUID) -> None:
    async with session_factory() as session, session.begin():
        await session.execute(
            update(QueuedTask)
            .where(QueuedTask.id == task_id)
            .values(started_at=utcnow() - timedelta(hours=1))
        )
    async with session_factory() as session, session.begin():
        assert await requeue_stalled(session, stall_timeout_seconds=60) == 1


class TestEnqueue:
    """Tests for enqueue()."""

    @pytest.mark.asyncio
    async def test_p0_enqueue_creates_pending_task(self, session_factory):
        """[P0] A new task is pending with zero retries."""
        # WHEN: Enqueueing a task
        task_id = await _enqueue(session_factory, priority=4, max_retries=2)

        # THEN: The stored task is pending
        async with session_factory() as session:
            task = await session.get(QueuedTask, task_id)
        assert task.status == TaskStatus.PENDING
        assert task.priority == 4
        assert task.retry_count == 0
        assert task.max_retries == 2

    @pytest.mark.asyncio
    async def test_p1_enqueue_accepts_task_type_string(self, session_factory):
        """[P1] Task type may be given by its string value."""
        task_id = await _enqueue(session_factory, task_type="trigger_build")

        async with session_factory() as session:
            task = await session.get(QueuedTask, task_id)
        assert task.task_type == TaskType.TRIGGER_BUILD

    @pytest.mark.asyncio
    async def test_p1_enqueue_rejects_unknown_task_type(self, session_factory):
        """[P1] Unknown task types are rejected."""
        with pytest.raises(InvalidTaskTypeError):
            await _enqueue(session_factory, task_type="render_video")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority", [0, 6])
    async def test_p1_enqueue_rejects_priority_out_of_range(self, session_factory, priority):
        """[P1] Priority outside 1-5 is rejected."""
        with pytest.raises(InvalidPayloadError):
            await _enqueue(session_factory, priority=priority)

    def test_p2_parse_task_type_passthrough(self):
        """[P2] Enum members pass through unchanged."""
        assert parse_task_type(TaskType.SEND_NOTIFICATION) is TaskType.SEND_NOTIFICATION


class TestClaimNext:
    """Tests for claim_next() ordering and exclusivity."""

    @pytest.mark.asyncio
    async def test_p0_empty_queue_returns_none(self, session_factory):
        """[P0] Claiming from an empty queue returns None."""
        assert await _claim(session_factory) is None

    @pytest.mark.asyncio
    async def test_p0_higher_priority_claimed_first(self, session_factory):
        """[P0] Priority 5 is claimed before priority 1.

        GIVEN: A low-priority task enqueued before a high-priority task
        WHEN: Claiming
        THEN: The high-priority task is returned
        """
        await _enqueue(session_factory, priority=1, n=1)
        high_id = await _enqueue(session_factory, priority=5, n=2)

        task = await _claim(session_factory)

        assert task.id == high_id
        assert task.status == TaskStatus.PROCESSING
        assert task.claimed_by == "worker-1"
        assert task.started_at is not None

    @pytest.mark.asyncio
    async def test_p0_fifo_within_priority(self, session_factory):
        """[P0] Equal priorities are claimed in creation order."""
        first = await _enqueue(session_factory, priority=3, n=1)
        second = await _enqueue(session_factory, priority=3, n=2)

        assert (await _claim(session_factory)).id == first
        assert (await _claim(session_factory)).id == second
        assert await _claim(session_factory) is None

    @pytest.mark.asyncio
    async def test_p0_task_claimed_only_once(self, session_factory):
        """[P0] Two claimants never receive the same task."""
        await _enqueue(session_factory)

        first = await _claim(session_factory, "worker-a")
        second = await _claim(session_factory, "worker-b")

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_p0_concurrent_claimants_get_disjoint_tasks(self, tmp_path):
        """[P0] Claimants racing on their own connections never share a task.

        GIVEN: 12 pending tasks in a file database (one connection per session)
        WHEN: 4 workers drain the queue concurrently
        THEN: Every task is claimed exactly once
        """
        engine, factory = create_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        enqueued = {await _enqueue(factory, n=n) for n in range(12)}

        async def drain(worker_id: str) -> list[uuid.UUID]:
            claimed = []
            while (task := await _claim(factory, worker_id)) is not None:
                claimed.append(task.id)
            return claimed

        try:
            results = await asyncio.gather(*(drain(f"worker-{i}") for i in range(4)))
        finally:
            await engine.dispose()

        all_claimed = [task_id for claimed in results for task_id in claimed]
        assert len(all_claimed) == len(set(all_claimed))
        assert set(all_claimed) == enqueued

    @pytest.mark.asyncio
    async def test_p1_delayed_task_not_claimable(self, session_factory):
        """[P1] A task held back by delay_seconds is invisible until due."""
        await _enqueue(session_factory, delay_seconds=600)

        assert await _claim(session_factory) is None


class TestCompleteAndFail:
    """Tests for complete(), fail() and cancel()."""

    @pytest.mark.asyncio
    async def test_p0_complete_marks_completed(self, session_factory):
        """[P0] complete() ends a processing task."""
        await _enqueue(session_factory)
        claimed = await _claim(session_factory)

        async with session_factory() as session, session.begin():
            task = await complete(session, claimed.id)

        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at is not None

    @pytest.mark.asyncio
    async def test_p1_complete_is_idempotent(self, session_factory):
        """[P1] Completing twice is a no-op."""
        await _enqueue(session_factory)
        claimed = await _claim(session_factory)
        async with session_factory() as session, session.begin():
            await complete(session, claimed.id)

        async with session_factory() as session, session.begin():
            task = await complete(session, claimed.id)

        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_p0_retryable_failure_requeues_with_backoff(self, session_factory, monkeypatch):
        """[P0] A retryable failure returns the task to pending behind a backoff.

        GIVEN: A claimed task with retries left and base delay 5s
        WHEN: It fails with a retryable error
        THEN: retry_count is 1, status pending, available 5s later
        """
        monkeypatch.setenv("QUEUE_RETRY_BASE_SECONDS", "5")
        await _enqueue(session_factory, max_retries=3)
        claimed = await _claim(session_factory)

        async with session_factory() as session, session.begin():
            outcome = await fail(session, claimed.id, "Connection reset", retryable=True)

        assert outcome.will_retry is True
        assert outcome.exhausted is False
        assert outcome.delay_seconds == 5
        assert outcome.task.status == TaskStatus.PENDING
        assert outcome.task.retry_count == 1
        assert outcome.task.claimed_by is None
        assert outcome.task.error_message == "Connection reset"
        # Backing off: not claimable yet
        assert await _claim(session_factory) is None

    @pytest.mark.asyncio
    async def test_p0_non_retryable_failure_is_terminal(self, session_factory):
        """[P0] A permanent failure ends the task at once."""
        await _enqueue(session_factory, max_retries=3)
        claimed = await _claim(session_factory)

        async with session_factory() as session, session.begin():
            outcome = await fail(session, claimed.id, "Invalid plan", retryable=False)

        assert outcome.exhausted is True
        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.retry_count == 0

    @pytest.mark.asyncio
    async def test_p0_retries_exhausted_after_max_retries(self, session_factory):
        """[P0] retry_count never exceeds max_retries; the last failure is terminal."""
        await _enqueue(session_factory, max_retries=1)
        claimed = await _claim(session_factory)
        async with session_factory() as session, session.begin():
            await fail(session, claimed.id, "timeout", retryable=True)

        # Make the retry claimable immediately
        async with session_factory() as session, session.begin():
            await session.execute(update(QueuedTask).values(available_at=None))
        claimed = await _claim(session_factory)
        async with session_factory() as session, session.begin():
            outcome = await fail(session, claimed.id, "timeout again", retryable=True)

        assert outcome.exhausted is True
        assert outcome.task.retry_count == 1
        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error_message == "timeout again"

    @pytest.mark.asyncio
    async def test_p1_fail_terminal_task_raises(self, session_factory):
        """[P1] Failing a completed task is an invalid transition."""
        await _enqueue(session_factory)
        claimed = await _claim(session_factory)
        async with session_factory() as session, session.begin():
            await complete(session, claimed.id)

        with pytest.raises(InvalidStateTransitionError):
            async with session_factory() as session, session.begin():
                await fail(session, claimed.id, "late error")

    @pytest.mark.asyncio
    async def test_p0_late_complete_after_stall_requeue_is_noop(self, session_factory):
        """[P0] A worker finishing a task the stall sweep took back changes nothing.

        GIVEN: worker-a's task was requeued by requeue_stalled()
        WHEN: worker-a completes it late
        THEN: complete() returns None and the task stays pending for another worker
        """
        await _enqueue(session_factory, max_retries=2)
        claimed = await _claim(session_factory, "worker-a")
        await _stall_and_requeue(session_factory, claimed.id)

        async with session_factory() as session, session.begin():
            result = await complete(session, claimed.id, worker_id="worker-a")

        assert result is None
        async with session_factory() as session:
            task = await session.get(QueuedTask, claimed.id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1

    @pytest.mark.asyncio
    async def test_p0_late_worker_cannot_settle_new_claim(self, session_factory):
        """[P0] After worker-b re-claims, worker-a can neither complete nor fail the task."""
        await _enqueue(session_factory, max_retries=2)
        claimed = await _claim(session_factory, "worker-a")
        await _stall_and_requeue(session_factory, claimed.id)
        reclaimed = await _claim(session_factory, "worker-b")
        assert reclaimed.id == claimed.id

        async with session_factory() as session, session.begin():
            completed = await complete(session, claimed.id, worker_id="worker-a")
            outcome = await fail(session, claimed.id, "late error", worker_id="worker-a")

        assert completed is None
        assert outcome.claim_lost is True
        assert outcome.exhausted is False
        async with session_factory() as session, session.begin():
            task = await complete(session, claimed.id, worker_id="worker-b")
        assert task.status == TaskStatus.COMPLETED
        assert task.claimed_by == "worker-b"

    @pytest.mark.asyncio
    async def test_p1_cancel_marks_cancelled(self, session_factory):
        """[P1] cancel() records the reason."""
        task_id = await _enqueue(session_factory)

        async with session_factory() as session, session.begin():
            task = await cancel(session, task_id, "project cancelled")

        assert task.status == TaskStatus.CANCELLED
        assert task.error_message == "project cancelled"

    @pytest.mark.parametrize(
        ("retry_count", "expected"),
        [(0, 5), (1, 10), (3, 40), (6, 300), (50, 300)],
    )
    def test_p1_compute_retry_delay(self, retry_count, expected):
        """[P1] Backoff doubles per retry and is capped."""
        assert compute_retry_delay(retry_count, 5, 300) == expected


class TestMaintenanceOperations:
    """Tests for requeue_stalled(), cancel_project_tasks() and get_queue_stats()."""

    @pytest.mark.asyncio
    async def test_p0_stalled_task_requeued_and_counted(self, session_factory):
        """[P0] A task stuck in processing goes back to pending with one retry used."""
        await _enqueue(session_factory, max_retries=2)
        claimed = await _claim(session_factory)
        async with session_factory() as session, session.begin():
            await session.execute(
                update(QueuedTask)
                .where(QueuedTask.id == claimed.id)
                .values(started_at=utcnow() - timedelta(hours=1))
            )

        async with session_factory() as session, session.begin():
            recovered = await requeue_stalled(session, stall_timeout_seconds=600)

        assert recovered == 1
        async with session_factory() as session:
            task = await session.get(QueuedTask, claimed.id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1
        assert task.claimed_by is None

    @pytest.mark.asyncio
    async def test_p1_stalled_task_without_retries_fails(self, session_factory):
        """[P1] A stalled task with no retries left is failed."""
        await _enqueue(session_factory, max_retries=0)
        claimed = await _claim(session_factory)
        async with session_factory() as session, session.begin():
            await session.execute(
                update(QueuedTask)
                .where(QueuedTask.id == claimed.id)
                .values(started_at=utcnow() - timedelta(hours=1))
            )

        async with session_factory() as session, session.begin():
            await requeue_stalled(session, stall_timeout_seconds=600)

        async with session_factory() as session:
            task = await session.get(QueuedTask, claimed.id)
        assert task.status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_p1_recent_processing_task_untouched(self, session_factory):
        """[P1] A task within the stall timeout is left alone."""
        await _enqueue(session_factory)
        await _claim(session_factory)

        async with session_factory() as session, session.begin():
            assert await requeue_stalled(session, stall_timeout_seconds=600) == 0

    @pytest.mark.asyncio
    async def test_p1_cancel_project_tasks_only_pending(self, session_factory, make_project):
        """[P1] Pending tasks of the project are cancelled, processing ones are not."""
        project = await make_project()
        await _enqueue(session_factory, project_id=project.id, priority=5)
        await _enqueue(session_factory, project_id=project.id, priority=1)
        await _claim(session_factory)

        async with session_factory() as session, session.begin():
            cancelled = await cancel_project_tasks(session, project.id)

        assert cancelled == 1
        async with session_factory() as session:
            stats = await get_queue_stats(session)
        assert stats["processing"] == 1
        assert stats["cancelled"] == 1
        assert stats["pending"] == 0
        assert set(stats) == {status.value for status in TaskStatus}
