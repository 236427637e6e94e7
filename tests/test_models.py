"""Tests for SQLAlchemy models.

Tests the Project and QueuedTask state machines, constraints, default
values and the BlockedIP expiry check.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.exceptions import InvalidStateTransitionError
from app.models import (
    BlockedIP,
    Project,
    ProjectStatus,
    QueuedTask,
    TaskStatus,
    TaskType,
    as_utc,
)


@pytest.mark.asyncio
async def test_project_defaults(async_session):
    """Test a new project starts analyzing with default priority and empty metadata."""
    project = Project(conversation_id="conv-defaults")
    async_session.add(project)
    await async_session.commit()

    saved = await async_session.scalar(
        select(Project).where(Project.conversation_id == "conv-defaults")
    )

    assert isinstance(saved.id, uuid.UUID)
    assert saved.status == ProjectStatus.ANALYZING
    assert saved.priority == 3
    assert saved.retry_count == 0
    assert saved.project_metadata == {}
    assert saved.status_changed_at is not None


@pytest.mark.asyncio
async def test_conversation_id_unique(async_session):
    """Test a second project for the same conversation is rejected."""
    async_session.add(Project(conversation_id="conv-dup"))
    await async_session.commit()

    async_session.add(Project(conversation_id="conv-dup"))
    with pytest.raises(IntegrityError):
        await async_session.commit()


@pytest.mark.asyncio
async def test_priority_check_constraint(async_session):
    """Test priority outside 1-5 violates the check constraint."""
    async_session.add(Project(conversation_id="conv-priority", priority=9))

    with pytest.raises(IntegrityError):
        await async_session.commit()


class TestProjectTransitions:
    """Tests for Project.status validation."""

    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (ProjectStatus.ANALYZING, ProjectStatus.PLANNING),
            (ProjectStatus.PLANNING, ProjectStatus.READY_TO_BUILD),
            (ProjectStatus.READY_TO_BUILD, ProjectStatus.BUILDING),
            (ProjectStatus.BUILDING, ProjectStatus.COMPLETED),
            (ProjectStatus.BUILDING, ProjectStatus.FAILED),
            (ProjectStatus.PLANNING, ProjectStatus.CANCELLED),
            (ProjectStatus.FAILED, ProjectStatus.ANALYZING),
        ],
    )
    def test_p0_valid_edges(self, from_status, to_status):
        """[P0] Edges in VALID_TRANSITIONS are accepted."""
        project = Project(conversation_id="c", status=from_status)

        project.status = to_status

        assert project.status == to_status

    @pytest.mark.parametrize(
        ("from_status", "to_status"),
        [
            (ProjectStatus.ANALYZING, ProjectStatus.BUILDING),
            (ProjectStatus.PLANNING, ProjectStatus.ANALYZING),
            (ProjectStatus.COMPLETED, ProjectStatus.FAILED),
            (ProjectStatus.CANCELLED, ProjectStatus.ANALYZING),
            (ProjectStatus.FAILED, ProjectStatus.PLANNING),
        ],
    )
    def test_p0_invalid_edges_rejected(self, from_status, to_status):
        """[P0] Skipping stages or leaving a terminal state raises before any write."""
        project = Project(conversation_id="c", status=from_status)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            project.status = to_status

        assert exc_info.value.from_status == from_status
        assert project.status == from_status

    def test_p1_same_status_reassignment_allowed(self):
        """[P1] Assigning the current status is a no-op."""
        project = Project(conversation_id="c", status=ProjectStatus.COMPLETED)

        project.status = ProjectStatus.COMPLETED

        assert project.status == ProjectStatus.COMPLETED

    def test_p1_terminal_statuses(self):
        """[P1] Only completed, failed and cancelled are terminal."""
        terminal = {status for status in ProjectStatus if status.is_terminal}

        assert terminal == {
            ProjectStatus.COMPLETED,
            ProjectStatus.FAILED,
            ProjectStatus.CANCELLED,
        }


class TestQueuedTaskTransitions:
    """Tests for QueuedTask.status validation."""

    def test_p0_retry_edge(self):
        """[P0] processing → pending is the retry edge."""
        task = QueuedTask(task_type=TaskType.GENERATE_PLAN, status=TaskStatus.PROCESSING)

        task.status = TaskStatus.PENDING

        assert task.status == TaskStatus.PENDING

    def test_p0_completed_is_final(self):
        """[P0] A completed task cannot be requeued."""
        task = QueuedTask(task_type=TaskType.GENERATE_PLAN, status=TaskStatus.COMPLETED)

        with pytest.raises(InvalidStateTransitionError):
            task.status = TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_p1_retry_count_bounded(self, async_session):
        """[P1] retry_count above max_retries violates the check constraint."""
        async_session.add(
            QueuedTask(task_type=TaskType.SEND_NOTIFICATION, retry_count=4, max_retries=3)
        )

        with pytest.raises(IntegrityError):
            await async_session.commit()


class TestBlockedIP:
    """Tests for BlockedIP.is_in_effect()."""

    NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        ("is_active", "blocked_until", "expected"),
        [
            (True, None, True),
            (True, NOW + timedelta(minutes=1), True),
            (True, NOW - timedelta(minutes=1), False),
            (True, NOW, False),
            (False, None, False),
            (False, NOW + timedelta(hours=1), False),
        ],
    )
    def test_p0_in_effect(self, is_active, blocked_until, expected):
        """[P0] Active blocks apply until blocked_until; NULL means permanent."""
        block = BlockedIP(
            ip_address="10.0.0.1",
            reason="test",
            is_active=is_active,
            blocked_until=blocked_until,
        )

        assert block.is_in_effect(self.NOW) is expected

    def test_p2_naive_expiry_treated_as_utc(self):
        """[P2] Naive timestamps read back from SQLite compare as UTC."""
        block = BlockedIP(
            ip_address="10.0.0.1",
            reason="test",
            is_active=True,
            blocked_until=datetime(2026, 3, 1, 13, 0),
        )

        assert block.is_in_effect(self.NOW) is True


def test_as_utc():
    """Test as_utc attaches UTC to naive values and leaves the rest alone."""
    aware = datetime(2026, 1, 1, tzinfo=timezone(timedelta(hours=2)))

    assert as_utc(None) is None
    assert as_utc(aware) is aware
    assert as_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc
