"""Pipeline entry-point routes.

- POST /api/v1/analyze - Create a project for a conversation and queue analysis
- POST /api/v1/generate-plan - Generate the plan of a project in planning
- POST /api/v1/projects/{project_id}/cancel - Cancel a project (admin)
- GET /api/v1/projects/{project_id} - Project with its latest build events (admin)
- GET /api/v1/projects?conversation_id=... - Same, looked up by conversation (admin)
- GET /api/v1/queue/stats - Task counts per queue status (admin)

Errors raised by the services (PipelineError subclasses) are turned into
{"error", "code"} responses by the application exception handler.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.dependencies import (
    enforce_rate_limit,
    get_stages,
    get_state_machine,
    require_admin,
)
from app.models import Project
from app.queue import get_queue_stats
from app.schemas.pipeline import (
    AnalyzeRequest,
    AnalyzeResponse,
    BuildEventResponse,
    CancelRequest,
    CancelResponse,
    GeneratePlanRequest,
    ProjectDetailResponse,
    ProjectResponse,
)
from app.schemas.plan import PlanSummary
from app.services.pipeline_stages import PipelineStages
from app.services.state_machine import (
    ProjectStateMachine,
    load_project,
    load_project_by_conversation,
    recent_build_events,
)
from app.utils.logging import get_logger

log = get_logger(__name__)
router = APIRouter(prefix="/api/v1", tags=["pipeline"])


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    body: AnalyzeRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    state_machine: ProjectStateMachine = Depends(get_state_machine),
) -> JSONResponse:
    """Start the pipeline for a conversation.

    Returns:
        201 Created: New project, analysis queued
        200 OK: Project already exists for this conversation (unchanged)
        429 Too Many Requests: Rate rule api_conversation exceeded
    """
    await enforce_rate_limit(request, session, "api_conversation")

    project, created = await state_machine.request_analysis(
        body.conversation_id,
        transcript_url=body.transcript_url,
        summary=body.summary,
        metadata=body.metadata,
        owner_id=body.user_id,
        priority=body.priority,
    )
    response = AnalyzeResponse(project_id=project.id, status=project.status.value, created=created)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        content=response.model_dump(mode="json"),
    )


@router.post("/generate-plan", response_model=PlanSummary)
async def generate_plan(
    body: GeneratePlanRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    stages: PipelineStages = Depends(get_stages),
) -> PlanSummary:
    """Generate the plan synchronously (409 unless the project is planning)."""
    await enforce_rate_limit(request, session, "api_build")
    # Commit the rate-limit log before the long plan call
    await session.commit()

    summary = await stages.plan_project(body.project_id, body.preferences)
    log.info(
        "plan_generated_via_api",
        project_id=str(body.project_id),
        complexity_score=summary.complexity_score,
    )
    return summary


@router.post(
    "/projects/{project_id}/cancel",
    response_model=CancelResponse,
    dependencies=[Depends(require_admin)],
)
async def cancel_project(
    project_id: UUID,
    body: CancelRequest | None = None,
    state_machine: ProjectStateMachine = Depends(get_state_machine),
) -> CancelResponse:
    result = await state_machine.cancel_project(project_id, body.reason if body else None)
    return CancelResponse(
        project_id=result.project_id,
        status=result.to_status.value,
        changed=result.changed,
    )


async def _project_detail(session: AsyncSession, project: Project) -> ProjectDetailResponse:
    events = await recent_build_events(session, project.id)
    return ProjectDetailResponse(
        project=ProjectResponse.model_validate(project),
        build_events=[BuildEventResponse.model_validate(event) for event in events],
    )


@router.get(
    "/projects/{project_id}",
    response_model=ProjectDetailResponse,
    dependencies=[Depends(require_admin)],
)
async def get_project(
    project_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> ProjectDetailResponse:
    """Current project row plus its most recent build events (404 if unknown)."""
    project = await load_project(session, project_id)
    return await _project_detail(session, project)


@router.get(
    "/projects",
    response_model=ProjectDetailResponse,
    dependencies=[Depends(require_admin)],
)
async def find_project(
    conversation_id: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_session),
) -> ProjectDetailResponse:
    project = await load_project_by_conversation(session, conversation_id)
    return await _project_detail(session, project)


@router.get("/queue/stats", dependencies=[Depends(require_admin)])
async def queue_stats(session: AsyncSession = Depends(get_session)) -> dict[str, int]:
    """Task counts per status, e.g. {"pending": 3, "processing": 1, ...}."""
    return await get_queue_stats(session)
