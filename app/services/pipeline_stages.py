"""Pipeline stage handlers executed by workers.

One handler per TaskType. Each handler:
    1. Re-reads the project (the database is the source of truth)
    2. Skips work whose stage the project has already passed
    3. Checks for cancellation before every side-effecting external call
    4. Calls the external service under a deadline
    5. Advances the project through ProjectStateMachine

Handlers raise on failure; the worker classifies the error and lets the
queue retry or fail the task. ProjectCancelledError tells the worker to
cancel the task instead.

Stage Flow:
    analyze_conversation: transcript → analysis → planning
    generate_plan: analysis → validated plan → ready_to_build
    trigger_build: plan → build service → building
    process_webhook: queued build / conversation webhook delivery
    send_notification: personal notification for a project owner
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.analysis import AnalysisClient
from app.clients.build_service import BuildServiceClient
from app.clients.conversation import ConversationClient
from app.config import (
    get_analysis_timeout_seconds,
    get_build_trigger_timeout_seconds,
    get_plan_timeout_seconds,
    get_public_base_url,
    get_transcript_timeout_seconds,
)
from app.exceptions import (
    AIAnalysisError,
    BuildServiceError,
    ConversationProviderError,
    InvalidPayloadError,
    InvalidStateTransitionError,
    ProjectCancelledError,
)
from app.models import BroadcastChannel, EventType, Project, ProjectStatus, TaskType, utcnow
from app.queue import parse_task_type
from app.schemas.plan import PlanSummary
from app.schemas.webhook import BuildWebhookPayload, ConversationWebhookPayload
from app.services.broadcaster import EventBroadcaster
from app.services.planning import (
    calculate_complexity_score,
    determine_priority,
    format_build_request,
    summarize_plan,
    validate_analysis,
    validate_plan,
)
from app.services.state_machine import (
    ProjectStateMachine,
    TransitionResult,
    load_project,
    parse_project_id,
    stage_already_passed,
)
from app.services.webhook_handler import (
    SOURCE_BUILD,
    SOURCE_CONVERSATION,
    apply_build_event,
    handle_conversation_event,
)
from app.utils.logging import get_logger

log = get_logger(__name__)

BUILD_CALLBACK_PATH = "/api/v1/webhooks/build"

# Task types whose exhaustion fails the owning project
STAGE_TASK_TYPES = frozenset(
    {TaskType.ANALYZE_CONVERSATION, TaskType.GENERATE_PLAN, TaskType.TRIGGER_BUILD}
)


def _skipped(project: Project, reason: str) -> dict[str, Any]:
    log.info(
        "stage_skipped",
        project_id=str(project.id),
        status=project.status.value,
        reason=reason,
    )
    return {"status": "skipped", "reason": reason, "project_id": str(project.id)}


class PipelineStages:
    """Stage handlers plus the dispatch table the worker uses.

    Args:
        session_factory: Factory for short transactions.
        state_machine: Owner of project status.
        broadcaster: Progress events.
        conversation_client: Transcript source.
        analysis_client: Analysis and plan generation.
        build_client: Build-automation service.
        public_base_url: Base of the build callback URL (default PUBLIC_BASE_URL).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: ProjectStateMachine,
        broadcaster: EventBroadcaster,
        *,
        conversation_client: ConversationClient,
        analysis_client: AnalysisClient,
        build_client: BuildServiceClient,
        public_base_url: str | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.broadcaster = broadcaster
        self.conversation_client = conversation_client
        self.analysis_client = analysis_client
        self.build_client = build_client
        self.public_base_url = (public_base_url or get_public_base_url()).rstrip("/")

        self.handlers: dict[TaskType, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            TaskType.ANALYZE_CONVERSATION: self.analyze_conversation,
            TaskType.GENERATE_PLAN: self.generate_plan,
            TaskType.TRIGGER_BUILD: self.trigger_build,
            TaskType.PROCESS_WEBHOOK: self.process_webhook,
            TaskType.SEND_NOTIFICATION: self.send_notification,
        }

    async def run(self, task_type: TaskType | str, payload: dict[str, Any]) -> dict[str, Any]:
        """Dispatch a task to its handler.

        Raises:
            InvalidTaskTypeError: Unknown task type.
        """
        handler = self.handlers[parse_task_type(task_type)]
        return await handler(payload or {})

    @property
    def build_callback_url(self) -> str:
        return f"{self.public_base_url}{BUILD_CALLBACK_PATH}"

    async def _load(self, project_id: uuid.UUID) -> Project:
        async with self.session_factory() as session:
            return await load_project(session, project_id)

    async def _ensure_not_cancelled(self, project_id: uuid.UUID) -> Project:
        """Re-read the project and stop if it was cancelled meanwhile.

        Raises:
            ProjectCancelledError: Project is cancelled.
        """
        project = await self._load(project_id)
        if project.status == ProjectStatus.CANCELLED:
            log.info("stage_stopped_project_cancelled", project_id=str(project_id))
            raise ProjectCancelledError(
                f"Project {project_id} was cancelled",
                context={"project_id": str(project_id)},
            )
        return project

    async def _load_for_stage(
        self, project_id: uuid.UUID, stage: ProjectStatus
    ) -> tuple[Project, str | None]:
        """Load a project for a stage handler.

        Returns:
            (project, skip_reason). skip_reason is None when the stage should run.

        Raises:
            ProjectCancelledError: Project is cancelled.
        """
        project = await self._ensure_not_cancelled(project_id)
        if project.status == stage:
            return project, None
        if project.status == ProjectStatus.FAILED:
            return project, "project_failed"
        if stage_already_passed(project.status, stage):
            return project, "already_done"
        return project, "not_ready"

    async def _advance(
        self,
        project_id: uuid.UUID,
        to_status: ProjectStatus,
        **kwargs: Any,
    ) -> TransitionResult:
        """Transition after a stage's external call completed.

        A project cancelled while the call was in flight stays cancelled.
        """
        try:
            return await self.state_machine.transition(project_id, to_status, **kwargs)
        except InvalidStateTransitionError:
            await self._ensure_not_cancelled(project_id)
            raise

    async def _fetch_transcript(self, project: Project) -> str:
        source = (project.project_metadata or {}).get("source") or {}
        transcript_url = source.get("transcript_url")
        summary = source.get("summary")

        transcript = ""
        if transcript_url:
            try:
                transcript = await asyncio.wait_for(
                    self.conversation_client.get_transcript(transcript_url),
                    timeout=get_transcript_timeout_seconds(),
                )
            except (ConversationProviderError, TimeoutError) as e:
                if not summary:
                    if isinstance(e, TimeoutError):
                        raise ConversationProviderError(
                            f"Transcript download timed out: {transcript_url}"
                        ) from e
                    raise
                log.warning(
                    "transcript_fetch_failed_using_summary",
                    project_id=str(project.id),
                    error=str(e),
                )

        if not transcript and summary:
            transcript = f"Conversation Summary: {summary}"
        if not transcript:
            raise InvalidPayloadError(
                "No transcript or summary available for analysis",
                context={"project_id": str(project.id)},
            )
        return transcript

    async def analyze_conversation(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Analyze the project's conversation and move it to planning."""
        project_id = parse_project_id(payload.get("project_id"))
        project, skip_reason = await self._load_for_stage(project_id, ProjectStatus.ANALYZING)
        if skip_reason:
            return _skipped(project, skip_reason)

        await self.broadcaster.broadcast(
            EventType.ANALYSIS_STARTED,
            {"conversation_id": project.conversation_id},
            project_id=project_id,
        )

        transcript = await self._fetch_transcript(project)
        summary = ((project.project_metadata or {}).get("source") or {}).get("summary")

        await self._ensure_not_cancelled(project_id)
        timeout = get_analysis_timeout_seconds()
        try:
            document = await asyncio.wait_for(
                self.analysis_client.analyze_conversation(transcript, summary),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise AIAnalysisError(f"Conversation analysis timed out after {timeout}s") from e

        try:
            analysis = validate_analysis(document)
        except AIAnalysisError as e:
            await self.state_machine.record_stage_failure(project_id, str(e))
            raise

        priority = determine_priority(analysis)
        await self._advance(
            project_id,
            ProjectStatus.PLANNING,
            updates={
                "name": analysis.project_name[:255],
                "description": analysis.description,
                "priority": priority,
            },
            metadata_updates={
                "analysis": analysis.model_dump(mode="json"),
                "analyzed_at": utcnow().isoformat(),
            },
        )
        log.info(
            "conversation_analyzed",
            project_id=str(project_id),
            project_name=analysis.project_name,
            features=len(analysis.features),
            priority=priority,
        )
        return {
            "status": "completed",
            "project_id": str(project_id),
            "project_name": analysis.project_name,
            "priority": priority,
        }

    async def plan_project(
        self, project_id: uuid.UUID, preferences: dict[str, Any] | None = None
    ) -> PlanSummary:
        """Generate, validate and store the plan of a project in planning.

        Used by the generate_plan task and synchronously by
        POST /api/v1/generate-plan.

        Raises:
            ProjectCancelledError: Project cancelled.
            InvalidStateTransitionError: Project not in planning.
            AIAnalysisError: Plan generation failed or the plan is invalid
                (the failure is recorded on the project).
        """
        project = await self._ensure_not_cancelled(project_id)
        if project.status != ProjectStatus.PLANNING:
            raise InvalidStateTransitionError(
                "Project must be in planning to generate a plan",
                from_status=project.status,
                to_status=ProjectStatus.READY_TO_BUILD,
            )

        analysis = (project.project_metadata or {}).get("analysis")
        if not analysis:
            raise InvalidPayloadError(
                "Project has no conversation analysis", context={"project_id": str(project_id)}
            )

        await self.broadcaster.broadcast(
            EventType.PLAN_GENERATION_STARTED,
            {"project_name": project.name},
            project_id=project_id,
        )

        timeout = get_plan_timeout_seconds()
        try:
            document = await asyncio.wait_for(
                self.analysis_client.generate_plan(analysis, preferences),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise AIAnalysisError(f"Plan generation timed out after {timeout}s") from e

        try:
            plan = validate_plan(document)
        except AIAnalysisError as e:
            await self.state_machine.record_stage_failure(project_id, str(e))
            raise

        complexity_score = calculate_complexity_score(plan)
        await self._advance(
            project_id,
            ProjectStatus.READY_TO_BUILD,
            updates={"project_plan": plan.model_dump(mode="json")},
            metadata_updates={
                "complexity_score": complexity_score,
                "estimated_hours": plan.timeline.estimated_hours,
                "plan_generated_at": utcnow().isoformat(),
                "plan_preferences": preferences or {},
            },
        )
        log.info(
            "project_plan_generated",
            project_id=str(project_id),
            features=len(plan.features),
            complexity_score=complexity_score,
        )
        return summarize_plan(project_id, ProjectStatus.READY_TO_BUILD.value, plan)

    async def generate_plan(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Task handler for generate_plan."""
        project_id = parse_project_id(payload.get("project_id"))
        project, skip_reason = await self._load_for_stage(project_id, ProjectStatus.PLANNING)
        if skip_reason:
            return _skipped(project, skip_reason)

        summary = await self.plan_project(project_id, payload.get("preferences"))
        return {"status": "completed", **summary.model_dump(mode="json")}

    async def trigger_build(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Hand the project plan to the build service and move to building."""
        project_id = parse_project_id(payload.get("project_id"))
        project, skip_reason = await self._load_for_stage(
            project_id, ProjectStatus.READY_TO_BUILD
        )
        if skip_reason == "already_done":
            return _skipped(project, "already_triggered")
        if skip_reason:
            return _skipped(project, skip_reason)

        if project.build_job_id:
            # Build started on an earlier attempt whose transition never committed
            log.info(
                "build_already_triggered",
                project_id=str(project_id),
                build_id=project.build_job_id,
            )
            await self._advance(project_id, ProjectStatus.BUILDING)
            return {
                "status": "already_triggered",
                "project_id": str(project_id),
                "build_id": project.build_job_id,
            }

        plan = validate_plan(project.project_plan or {})
        request = format_build_request(plan, project, self.build_callback_url)

        await self._ensure_not_cancelled(project_id)
        timeout = get_build_trigger_timeout_seconds()
        try:
            result = await asyncio.wait_for(
                self.build_client.trigger_build(request), timeout=timeout
            )
        except TimeoutError as e:
            raise BuildServiceError(f"Build trigger timed out after {timeout}s") from e

        try:
            await self._advance(
                project_id,
                ProjectStatus.BUILDING,
                updates={
                    "build_job_id": result["build_id"],
                    "build_project_id": result["project_id"],
                },
                metadata_updates={
                    "build_triggered_at": utcnow().isoformat(),
                    "build_status": result["status"],
                    "estimated_completion": result.get("estimated_completion"),
                },
            )
        except ProjectCancelledError:
            log.warning(
                "build_started_for_cancelled_project",
                project_id=str(project_id),
                build_id=result["build_id"],
            )
            raise

        return {
            "status": "build_triggered",
            "project_id": str(project_id),
            "build_id": result["build_id"],
            "build_project_id": result["project_id"],
        }

    async def process_webhook(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply a queued webhook delivery."""
        source = payload.get("source")
        body = payload.get("payload") or {}

        if source == SOURCE_BUILD:
            try:
                event = BuildWebhookPayload.model_validate(body)
            except ValidationError as e:
                raise InvalidPayloadError(f"Invalid build webhook payload: {e}") from e

            async with self.session_factory() as session, session.begin():
                outcome = await apply_build_event(session, event)

            for transition in outcome.transitions:
                await self.state_machine.announce(transition)
            if outcome.applied:
                await self.broadcaster.broadcast(
                    outcome.event_type,
                    outcome.data,
                    project_id=outcome.project_id,
                    channel=BroadcastChannel.BUILD_EVENTS,
                    metadata={"build_id": event.build_id, "source": SOURCE_BUILD},
                )
            return {
                "status": outcome.status,
                "reason": outcome.reason,
                "event_type": outcome.event_type,
                "project_id": str(outcome.project_id) if outcome.project_id else None,
            }

        if source == SOURCE_CONVERSATION:
            try:
                event = ConversationWebhookPayload.model_validate(body)
            except ValidationError as e:
                raise InvalidPayloadError(f"Invalid conversation webhook payload: {e}") from e
            return await handle_conversation_event(self.state_machine, event)

        raise InvalidPayloadError(
            f"Unknown webhook source: {source}", context={"source": source}
        )

    async def send_notification(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Deliver a personal notification to a project owner."""
        user_id = payload.get("user_id")
        event_type = payload.get("event_type")
        if not user_id or not event_type:
            raise InvalidPayloadError("send_notification requires user_id and event_type")

        project_id = payload.get("project_id")
        result = await self.broadcaster.broadcast(
            event_type,
            payload.get("data") or {},
            project_id=parse_project_id(project_id) if project_id else None,
            channel=BroadcastChannel.USER_NOTIFICATIONS,
            user_id=user_id,
        )
        return result.to_dict()
