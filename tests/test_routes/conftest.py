"""Fixtures for API route tests.

Routes run in-process through httpx.ASGITransport on the test's event loop,
against the in-memory database. The lifespan does not run: collaborators are
assigned to app.state directly and get_session is overridden.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from app.database import get_session
from app.main import app
from app.services.rate_limiter import RateLimiter

ADMIN_TOKEN = "admin-test-token"


@pytest_asyncio.fixture
async def api(session_factory, broadcaster, state_machine, monkeypatch):
    """HTTP client for the app wired to the test database.

    app.state.stages is a MagicMock with an AsyncMock plan_project.
    """
    monkeypatch.setenv("ADMIN_TOKEN", ADMIN_TOKEN)

    stages = MagicMock()
    stages.plan_project = AsyncMock()
    app.state.session_factory = session_factory
    app.state.broadcaster = broadcaster
    app.state.state_machine = state_machine
    app.state.rate_limiter = RateLimiter()
    app.state.stages = stages

    async def override_get_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
