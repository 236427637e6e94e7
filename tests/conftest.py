"""Shared pytest fixtures for async database testing.

This module provides reusable fixtures for testing SQLAlchemy models, the
task queue and the pipeline services against an in-memory SQLite database
(StaticPool, so every session shares one connection).
"""

import uuid
from typing import Any

import pytest
import pytest_asyncio

from app.database import create_test_engine
from app.models import Base, Project, ProjectStatus, utcnow
from app.services.broadcaster import EventBroadcaster, SubscriptionHub
from app.services.state_machine import ProjectStateMachine


@pytest_asyncio.fixture
async def engine_and_factory():
    """Create an in-memory SQLite engine with all tables.

    Yields:
        Tuple of (AsyncEngine, async_sessionmaker).
    """
    engine, factory = create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine, factory

    await engine.dispose()


@pytest.fixture
def session_factory(engine_and_factory):
    """Session factory bound to the test engine (expire_on_commit=False)."""
    return engine_and_factory[1]


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Session for direct test operations. Tests commit explicitly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def hub() -> SubscriptionHub:
    return SubscriptionHub()


@pytest.fixture
def broadcaster(session_factory, hub) -> EventBroadcaster:
    return EventBroadcaster(session_factory, hub)


@pytest.fixture
def state_machine(session_factory, broadcaster) -> ProjectStateMachine:
    return ProjectStateMachine(session_factory, broadcaster)


@pytest.fixture
def make_project(session_factory):
    """Factory inserting a project directly in any status (no tasks enqueued).

    Example:
        project = await make_project(status=ProjectStatus.PLANNING)
    """

    async def _make(
        status: ProjectStatus = ProjectStatus.ANALYZING,
        **fields: Any,
    ) -> Project:
        now = utcnow()
        values: dict[str, Any] = {
            "id": uuid.uuid4(),
            "conversation_id": f"conv-{uuid.uuid4().hex[:12]}",
            "status": status,
            "priority": 3,
            "project_metadata": {},
            "created_at": now,
            "updated_at": now,
            "status_changed_at": now,
        }
        values.update(fields)
        async with session_factory() as session, session.begin():
            project = Project(**values)
            session.add(project)
        return project

    return _make


@pytest.fixture
def sample_analysis() -> dict[str, Any]:
    """Analysis document as returned by the analysis service."""
    return {
        "projectName": "Shop Builder",
        "description": "An online store for handmade goods",
        "summary": "Customer wants a small web shop",
        "requirements": ["Product catalog", "Checkout"],
        "features": ["Product catalog", "Payment processing"],
        "preferences": {
            "techStack": ["React", "FastAPI"],
            "timeline": "two months",
            "complexity": "medium",
        },
        "extractedEntities": {"people": ["Ana"]},
    }


@pytest.fixture
def sample_plan() -> dict[str, Any]:
    """Plan document as returned by the plan generator."""
    return {
        "name": "Shop Builder",
        "description": "An online store for handmade goods",
        "techStack": {
            "frontend": ["React"],
            "backend": ["FastAPI"],
            "database": ["PostgreSQL"],
            "deployment": "docker",
        },
        "features": [
            {
                "id": "f1",
                "name": "Catalog",
                "description": "Browse products",
                "priority": "high",
                "complexity": 3,
            },
            {
                "id": "f2",
                "name": "Checkout",
                "description": "Pay for products",
                "priority": "low",
                "complexity": 5,
            },
        ],
        "architecture": {"type": "monolith"},
        "timeline": {
            "estimated_hours": 45,
            "phases": [{"name": "MVP", "estimated_hours": 45, "tasks": ["f1", "f2"]}],
        },
        "file_structure": [{"path": "src/main.py", "type": "file"}],
        "dependencies": [{"name": "fastapi", "version": "0.110"}],
        "buildConfig": {"node": "20"},
    }
