"""Tests for the pipeline, rate-limit and broadcast routes.

Tests FastAPI endpoint integration:
- POST /api/v1/analyze: create vs existing, validation, rate limiting
- POST /api/v1/generate-plan and /projects/{id}/cancel: error mapping, admin gating
- GET /api/v1/projects/* and /queue/stats: operator read views
- /api/v1/rate-limit/*: checks, admin gating, abuse blocking
- POST /api/v1/broadcast and the live WebSocket stream
"""

import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from sqlalchemy import select

from app.exceptions import InvalidStateTransitionError
from app.main import app
from app.models import (
    BlockedIP,
    BroadcastEvent,
    BuildEvent,
    Project,
    ProjectStatus,
    QueuedTask,
    TaskType,
    utcnow,
)
from app.schemas.plan import PlanSummary


def _analyze_body(conversation_id: str = "conv-1", **extra) -> dict:
    return {"conversation_id": conversation_id, "summary": "Wants a web shop", **extra}


class TestAnalyze:
    """Tests for POST /api/v1/analyze."""

    @pytest.mark.asyncio
    async def test_p0_new_conversation_created(self, api, session_factory):
        """[P0] A new conversation returns 201 and queues analysis."""
        response = await api.post(
            "/api/v1/analyze", json=_analyze_body(priority=4, user_id="user-1")
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "analyzing"
        assert data["created"] is True
        async with session_factory() as session:
            project = await session.get(Project, uuid.UUID(data["project_id"]))
            task = await session.scalar(select(QueuedTask))
        assert project.owner_id == "user-1"
        assert project.priority == 4
        assert task.task_type == TaskType.ANALYZE_CONVERSATION

    @pytest.mark.asyncio
    async def test_p0_existing_conversation_returns_200(self, api):
        """[P0] A repeat request returns the same project with 200."""
        first = await api.post("/api/v1/analyze", json=_analyze_body())
        second = await api.post("/api/v1/analyze", json=_analyze_body())

        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["project_id"] == first.json()["project_id"]

    @pytest.mark.asyncio
    async def test_p1_source_required(self, api):
        """[P1] Neither transcript URL nor summary: 422."""
        response = await api.post("/api/v1/analyze", json={"conversation_id": "conv-1"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_p0_sixth_request_rate_limited(self, api):
        """[P0] api_conversation allows 5 requests per minute per IP.

        GIVEN: Five analyze requests from one IP
        WHEN: A sixth arrives
        THEN: 429 with Retry-After and the rejection details
        """
        for n in range(5):
            response = await api.post("/api/v1/analyze", json=_analyze_body(f"conv-{n}"))
            assert response.status_code == 201

        response = await api.post("/api/v1/analyze", json=_analyze_body("conv-6"))

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "300"
        detail = response.json()["detail"]
        assert detail["reason"] == "RATE_LIMITED"
        assert detail["rule"] == "api_conversation"


class TestGeneratePlanAndCancel:
    """Tests for POST /api/v1/generate-plan and POST /api/v1/projects/{id}/cancel."""

    @pytest.mark.asyncio
    async def test_p0_generate_plan_returns_summary(self, api):
        """[P0] The plan summary from the stage is returned."""
        project_id = uuid.uuid4()
        app.state.stages.plan_project.return_value = PlanSummary(
            project_id=project_id,
            status="ready_to_build",
            plan_name="Shop",
            features_count=2,
            estimated_hours=45,
            phases_count=1,
            tech_stack={"frontend": ["React"]},
            complexity_score=22,
        )

        response = await api.post(
            "/api/v1/generate-plan",
            json={"project_id": str(project_id), "preferences": {"hosting": "fly.io"}},
        )

        assert response.status_code == 200
        assert response.json()["complexity_score"] == 22
        app.state.stages.plan_project.assert_awaited_once_with(
            project_id, {"hosting": "fly.io"}
        )

    @pytest.mark.asyncio
    async def test_p1_generate_plan_wrong_status_409(self, api):
        """[P1] A project not in planning maps to 409 STATE_CONFLICT."""
        app.state.stages.plan_project.side_effect = InvalidStateTransitionError(
            "Project must be in planning to generate a plan",
            from_status=ProjectStatus.ANALYZING,
            to_status=ProjectStatus.READY_TO_BUILD,
        )

        response = await api.post("/api/v1/generate-plan", json={"project_id": str(uuid.uuid4())})

        assert response.status_code == 409
        assert response.json()["code"] == "STATE_CONFLICT"

    @pytest.mark.asyncio
    async def test_p0_cancel_project(self, api, make_project, admin_headers):
        """[P0] Cancelling an active project returns the new status."""
        project = await make_project(ProjectStatus.PLANNING)

        response = await api.post(
            f"/api/v1/projects/{project.id}/cancel", json={"reason": "changed my mind"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "project_id": str(project.id),
            "status": "cancelled",
            "changed": True,
        }

    @pytest.mark.asyncio
    async def test_p1_cancel_unknown_project_404(self, api, admin_headers):
        """[P1] Unknown project: 404 NOT_FOUND."""
        response = await api.post(
            f"/api/v1/projects/{uuid.uuid4()}/cancel", headers=admin_headers
        )

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_p1_cancel_completed_project_409(self, api, make_project, admin_headers):
        """[P1] A completed project cannot be cancelled."""
        project = await make_project(ProjectStatus.COMPLETED)

        response = await api.post(f"/api/v1/projects/{project.id}/cancel", headers=admin_headers)

        assert response.status_code == 409

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": "wrong"}])
    async def test_p0_cancel_requires_admin_token(
        self, api, make_project, session_factory, headers
    ):
        """[P0] Cancelling without the operator token is 403 and the project keeps running.

        GIVEN: A planning project
        WHEN: Cancel is posted with no token or a wrong one
        THEN: 403 UNAUTHORIZED and the project is still planning
        """
        project = await make_project(ProjectStatus.PLANNING)

        response = await api.post(f"/api/v1/projects/{project.id}/cancel", headers=headers)

        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED"
        async with session_factory() as session:
            stored = await session.get(Project, project.id)
        assert stored.status == ProjectStatus.PLANNING


class TestProjectViews:
    """Tests for the operator read routes."""

    @pytest.mark.asyncio
    async def test_p0_project_detail_with_recent_build_events(
        self, api, make_project, session_factory, admin_headers
    ):
        """[P0] A project is returned with its build events, newest first.

        GIVEN: A building project with 25 recorded build events
        WHEN: Its detail is requested by id and by conversation id
        THEN: Both return the project and the latest 20 events
        """
        project = await make_project(
            ProjectStatus.BUILDING,
            build_job_id="build-1",
            project_metadata={"latest_progress": 40},
        )
        start = utcnow() - timedelta(minutes=30)
        async with session_factory() as session, session.begin():
            for n in range(25):
                session.add(
                    BuildEvent(
                        project_id=project.id,
                        build_id="build-1",
                        event_type="build_progress",
                        payload={"progress": n},
                        sequence_number=n,
                        created_at=start + timedelta(minutes=n),
                    )
                )

        by_id = await api.get(f"/api/v1/projects/{project.id}", headers=admin_headers)
        by_conversation = await api.get(
            "/api/v1/projects",
            params={"conversation_id": project.conversation_id},
            headers=admin_headers,
        )

        assert by_id.status_code == 200
        data = by_id.json()
        assert data["project"]["status"] == "building"
        assert data["project"]["build_job_id"] == "build-1"
        assert data["project"]["metadata"] == {"latest_progress": 40}
        assert len(data["build_events"]) == 20
        assert [e["sequence_number"] for e in data["build_events"][:2]] == [24, 23]
        assert by_conversation.json() == data

    @pytest.mark.asyncio
    async def test_p1_unknown_project_and_conversation_404(self, api, admin_headers):
        """[P1] Unknown ids map to 404 NOT_FOUND."""
        by_id = await api.get(f"/api/v1/projects/{uuid.uuid4()}", headers=admin_headers)
        by_conversation = await api.get(
            "/api/v1/projects", params={"conversation_id": "conv-none"}, headers=admin_headers
        )

        assert by_id.status_code == 404
        assert by_conversation.status_code == 404
        assert by_conversation.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_p0_queue_stats(self, api, admin_headers):
        """[P0] Queue stats count tasks per status.

        GIVEN: One analyze request (one pending analysis task)
        WHEN: Queue stats are requested
        THEN: Every status is present and pending is 1
        """
        await api.post("/api/v1/analyze", json=_analyze_body())

        response = await api.get("/api/v1/queue/stats", headers=admin_headers)

        assert response.status_code == 200
        stats = response.json()
        assert stats["pending"] == 1
        assert stats["processing"] == 0
        assert set(stats) == {"pending", "processing", "completed", "failed", "cancelled"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path", ["/api/v1/projects/00000000-0000-0000-0000-000000000000", "/api/v1/queue/stats"]
    )
    async def test_p1_read_routes_require_admin_token(self, api, path):
        """[P1] Operator read routes are 403 without the token."""
        response = await api.get(path)

        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED"


class TestRateLimitRoutes:
    """Tests for /api/v1/rate-limit/*."""

    @pytest.mark.asyncio
    async def test_p0_check_allowed_then_rejected(self, api):
        """[P0] api_build allows 3 checks, the 4th is 429."""
        body = {"identifier": "user-1", "rule": "api_build"}

        results = [await api.post("/api/v1/rate-limit/check", json=body) for _ in range(4)]

        assert [r.status_code for r in results] == [200, 200, 200, 429]
        assert results[0].json()["remaining"] == 2
        assert results[3].headers["Retry-After"] == "600"
        assert results[3].json()["blocked"] is True

    @pytest.mark.asyncio
    async def test_p1_unknown_rule_400(self, api):
        """[P1] Unknown rule names are rejected."""
        response = await api.post(
            "/api/v1/rate-limit/check", json={"identifier": "u", "rule": "nope"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_RULE"

    @pytest.mark.asyncio
    async def test_p0_repeated_rejections_block_ip(self, api, session_factory):
        """[P0] Ten rejections from one IP block it; the next check is IP_BLOCKED.

        GIVEN: api_build (3 allowed) checked 13 times from one IP
        WHEN: Background abuse detection runs after the 10th rejection
        THEN: The IP is blocked and further checks report IP_BLOCKED
        """
        body = {"identifier": "user-1", "rule": "api_build"}
        for _ in range(13):
            await api.post("/api/v1/rate-limit/check", json=body)

        response = await api.post(
            "/api/v1/rate-limit/check", json={"identifier": "someone-else", "rule": "api_build"}
        )

        assert response.status_code == 429
        assert response.json()["reason"] == "IP_BLOCKED"
        async with session_factory() as session:
            block = await session.scalar(select(BlockedIP))
        assert block.reason == "SUSPICIOUS_ACTIVITY"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": "wrong"}])
    async def test_p0_admin_routes_require_token(self, api, headers):
        """[P0] Admin routes return 403 without the right token and change nothing."""
        response = await api.post(
            "/api/v1/rate-limit/block", json={"ip_address": "10.0.0.1"}, headers=headers
        )

        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_p1_block_and_unblock(self, api, admin_headers):
        """[P1] An admin block rejects the IP until it is lifted."""
        blocked = await api.post(
            "/api/v1/rate-limit/block",
            json={"ip_address": "127.0.0.1", "reason": "abuse", "duration_hours": 2},
            headers=admin_headers,
        )
        check = await api.post(
            "/api/v1/rate-limit/check", json={"identifier": "u", "rule": "api_general"}
        )
        unblocked = await api.post(
            "/api/v1/rate-limit/unblock", json={"ip_address": "127.0.0.1"}, headers=admin_headers
        )
        again = await api.post(
            "/api/v1/rate-limit/unblock", json={"ip_address": "127.0.0.1"}, headers=admin_headers
        )

        assert blocked.status_code == 200
        assert blocked.json()["block"]["created_by"] == "admin"
        assert check.json()["reason"] == "IP_BLOCKED"
        assert unblocked.json()["status"] == "unblocked"
        assert again.status_code == 404

    @pytest.mark.asyncio
    async def test_p1_reset(self, api, admin_headers):
        """[P1] Reset clears counters; an unscoped reset is rejected."""
        body = {"identifier": "user-1", "rule": "api_build"}
        for _ in range(4):
            await api.post("/api/v1/rate-limit/check", json=body)

        reset = await api.post(
            "/api/v1/rate-limit/reset", json={"identifier": "user-1"}, headers=admin_headers
        )
        unscoped = await api.post("/api/v1/rate-limit/reset", json={}, headers=admin_headers)
        check = await api.post("/api/v1/rate-limit/check", json=body)

        assert reset.json() == {"status": "reset", "entries_removed": 1}
        assert unscoped.status_code == 422
        assert check.status_code == 200

    @pytest.mark.asyncio
    async def test_p2_stats(self, api, admin_headers):
        """[P2] Stats aggregate logged checks; unknown timeframes are 400."""
        await api.post("/api/v1/rate-limit/check", json={"identifier": "u", "rule": "api_build"})

        stats = await api.get("/api/v1/rate-limit/stats?timeframe=1h", headers=admin_headers)
        bad = await api.get("/api/v1/rate-limit/stats?timeframe=2y", headers=admin_headers)

        assert stats.status_code == 200
        assert stats.json()["total_requests"] == 1
        assert bad.status_code == 400


class TestBroadcastRoutes:
    """Tests for POST /api/v1/broadcast and the WebSocket streams."""

    @pytest.mark.asyncio
    async def test_p0_broadcast_event(self, api, session_factory, make_project, admin_headers):
        """[P0] A broadcast is stored and reported."""
        project = await make_project(ProjectStatus.BUILDING)

        response = await api.post(
            "/api/v1/broadcast",
            json={
                "event_type": "build_progress",
                "project_id": str(project.id),
                "channel": "build_events",
                "data": {"step": "Linking", "progress": 90},
            },
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["broadcasted"] is True
        assert data["message"] == "Linking: 90% complete"
        assert data["channel"] == f"build_events:{project.id}"
        async with session_factory() as session:
            assert await session.scalar(select(BroadcastEvent.event_type)) == "build_progress"

    @pytest.mark.asyncio
    async def test_p2_invalid_channel_422(self, api, admin_headers):
        """[P2] Channels outside the closed set are rejected."""
        response = await api.post(
            "/api/v1/broadcast", json={"event_type": "x", "channel": "everything"},
            headers=admin_headers,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_p0_broadcast_requires_admin_token(self, api, session_factory):
        """[P0] Without the operator token nothing is broadcast or stored."""
        response = await api.post(
            "/api/v1/broadcast",
            json={"event_type": "system_alert", "data": {"message": "spoofed"}},
            headers={"X-Admin-Token": "wrong"},
        )

        assert response.status_code == 403
        async with session_factory() as session:
            assert await session.scalar(select(BroadcastEvent)) is None

    def test_p1_websocket_streams_channel_messages(self, monkeypatch):
        """[P1] A project WebSocket receives messages published on its channel."""
        project_id = uuid.uuid4()
        subscribed: list[str] = []

        class OneMessageQueue:
            def __init__(self):
                self.sent = False

            async def get(self):
                if self.sent:
                    raise WebSocketDisconnect()
                self.sent = True
                return {"event_type": "build_progress", "channel": subscribed[0]}

        class StubHub:
            @asynccontextmanager
            async def subscribe(self, channel):
                subscribed.append(channel)
                yield OneMessageQueue()

        monkeypatch.setattr(app.state, "broadcaster", SimpleNamespace(hub=StubHub()), raising=False)
        client = TestClient(app)

        with client.websocket_connect(
            f"/api/v1/ws/projects/{project_id}?channel=build_events"
        ) as websocket:
            message = websocket.receive_json()

        assert subscribed == [f"build_events:{project_id}"]
        assert message["event_type"] == "build_progress"
