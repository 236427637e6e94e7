"""Inbound webhook handling: verification, idempotency, and event application.

Flow for both providers:
    1. Route verifies the HMAC signature against the raw body (fail closed)
    2. accept_delivery() records the delivery id and enqueues a
       process_webhook task in one short transaction; a repeated delivery id
       is reported as a duplicate and nothing is enqueued
    3. The worker runs the task, which calls apply_build_event() or
       handle_conversation_event()

Build events are replay safe: out-of-order sequence numbers are skipped and
a terminal event for a project that is already terminal changes nothing.
"""

import hashlib
import hmac
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.constants import (
    BUILD_EVENT_TYPE_MAP,
    CONVERSATION_ACKNOWLEDGED_EVENTS,
    CONVERSATION_ANALYSIS_PRIORITY,
    CONVERSATION_PIPELINE_EVENTS,
    DEFAULT_BUILD_EVENT,
    MAX_PROJECT_RETRIES,
    MAX_TRACKED_FILES,
    MAX_TRACKED_LOG_ENTRIES,
    TERMINAL_BUILD_EVENTS,
    TRACKED_LOG_LEVELS,
    WEBHOOK_MAX_AGE_SECONDS,
    WEBHOOK_MAX_FUTURE_SKEW_SECONDS,
    WEBHOOK_TASK_PRIORITY,
)
from app.models import BuildEvent, Project, ProjectStatus, TaskType, WebhookEvent, utcnow
from app.queue import enqueue
from app.schemas.webhook import BuildWebhookPayload, ConversationWebhookPayload
from app.services.state_machine import (
    ProjectStateMachine,
    TransitionResult,
    apply_transition,
    load_project,
)
from app.utils.logging import get_logger

log = get_logger(__name__)

SOURCE_BUILD = "build"
SOURCE_CONVERSATION = "conversation"

# Build event → project status it drives
BUILD_EVENT_TRANSITIONS: dict[str, ProjectStatus] = {
    "build_started": ProjectStatus.BUILDING,
    "build_completed": ProjectStatus.COMPLETED,
    "build_failed": ProjectStatus.FAILED,
    "build_cancelled": ProjectStatus.CANCELLED,
}


def verify_webhook_signature(
    body: bytes,
    signature: str | None,
    secret: str,
    timestamp: str | None = None,
    *,
    now: float | None = None,
) -> bool:
    """Verify an HMAC-SHA256 webhook signature.

    With a timestamp the signed message is "{timestamp}.{body}" and the
    timestamp must be no older than 5 minutes and no more than 60 seconds in
    the future. Without one the signature covers the body alone.

    Args:
        body: Raw request body (bytes, not parsed JSON).
        signature: Hex digest from the signature header ("sha256=" prefix allowed).
        secret: Shared secret.
        timestamp: Unix seconds from the timestamp header, if sent.
        now: Current unix time (tests).

    Returns:
        True if the signature is valid and fresh. False when no secret is configured.

    Security:
        Uses constant-time comparison to prevent timing attacks
    """
    if not secret:
        log.warning("webhook_secret_not_configured")
        return False
    if not signature:
        log.warning("webhook_signature_missing")
        return False

    message = body
    if timestamp:
        try:
            sent_at = int(timestamp)
        except ValueError:
            log.warning("webhook_timestamp_invalid", timestamp=timestamp[:20])
            return False
        current = time.time() if now is None else now
        if current - sent_at > WEBHOOK_MAX_AGE_SECONDS:
            log.warning("webhook_timestamp_expired", age_seconds=int(current - sent_at))
            return False
        if sent_at - current > WEBHOOK_MAX_FUTURE_SKEW_SECONDS:
            log.warning("webhook_timestamp_in_future", skew_seconds=int(sent_at - current))
            return False
        message = f"{timestamp}.".encode() + body

    provided = signature.removeprefix("sha256=").strip().lower()
    computed = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(computed, provided)

    if not is_valid:
        log.warning(
            "webhook_signature_verification_failed",
            signature_provided=provided[:8] + "...",
            computed_signature=computed[:8] + "...",  # Log prefix only
        )
    return is_valid


def derive_delivery_id(body: bytes, header_value: str | None, payload_id: str | None) -> str:
    """Delivery id for idempotency: header, then payload id, then body digest."""
    if header_value:
        return header_value
    if payload_id:
        return payload_id
    return "sha256:" + hashlib.sha256(body).hexdigest()


async def is_duplicate_webhook(
    session: AsyncSession,
    source: str,
    delivery_id: str,
    event_type: str,
    payload: dict[str, Any],
) -> bool:
    """Check-and-record a delivery inside the caller's transaction.

    Returns:
        True if this delivery was seen before (skip it), False if it is new
        (it has now been recorded).
    """
    existing = await session.scalar(
        select(WebhookEvent).where(
            WebhookEvent.source == source, WebhookEvent.delivery_id == delivery_id
        )
    )
    if existing is not None:
        log.info(
            "duplicate_webhook_detected",
            source=source,
            delivery_id=delivery_id,
            first_processed_at=existing.processed_at.isoformat(),
        )
        return True

    session.add(
        WebhookEvent(
            source=source,
            delivery_id=delivery_id,
            event_type=event_type,
            payload=payload,
            processed_at=utcnow(),
        )
    )
    await session.flush()
    return False


async def accept_delivery(
    session_factory: async_sessionmaker[AsyncSession],
    source: str,
    delivery_id: str,
    event_type: str,
    payload: dict[str, Any],
) -> uuid.UUID | None:
    """Record a verified delivery and queue its processing.

    Returns:
        The process_webhook task id, or None for a duplicate delivery.
    """
    try:
        async with session_factory() as session, session.begin():
            if await is_duplicate_webhook(session, source, delivery_id, event_type, payload):
                return None
            task_id = await enqueue(
                session,
                TaskType.PROCESS_WEBHOOK,
                {"source": source, "delivery_id": delivery_id, "payload": payload},
                priority=WEBHOOK_TASK_PRIORITY,
            )
    except IntegrityError:
        # Concurrent redelivery recorded the same id first
        log.info("duplicate_webhook_race", source=source, delivery_id=delivery_id)
        return None

    log.info(
        "webhook_accepted",
        source=source,
        delivery_id=delivery_id,
        event_type=event_type,
        task_id=str(task_id),
    )
    return task_id


@dataclass
class BuildEventOutcome:
    """What apply_build_event() did.

    status is "applied", "skipped" (out of order) or "ignored" (unknown
    build, terminal replay).
    """

    status: str
    event_type: str
    reason: str | None = None
    project_id: uuid.UUID | None = None
    owner_id: str | None = None
    transitions: list[TransitionResult] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def applied(self) -> bool:
        return self.status == "applied"


def map_build_event_type(event_type: str) -> str:
    return BUILD_EVENT_TYPE_MAP.get(event_type, DEFAULT_BUILD_EVENT)


def clamp_progress(value: Any) -> int:
    try:
        progress = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, progress))


async def _find_build_project(
    session: AsyncSession, payload: BuildWebhookPayload
) -> Project | None:
    conditions = [Project.build_job_id == payload.build_id]
    if payload.project_id:
        conditions.append(Project.build_project_id == payload.project_id)
    project_id = await session.scalar(select(Project.id).where(or_(*conditions)).limit(1))
    if project_id is None:
        return None
    return await load_project(session, project_id, for_update=True)


def _event_metadata(
    event_type: str, data: dict[str, Any], metadata: dict[str, Any], now_iso: str
) -> dict[str, Any]:
    """Metadata keys to merge for one build event."""
    updates: dict[str, Any] = {}

    if event_type == "build_started":
        updates["build_started_at"] = now_iso
    elif event_type == "build_progress":
        updates.update(
            latest_progress=clamp_progress(data.get("progress")),
            current_step=data.get("current_step") or data.get("step"),
            last_progress_update=now_iso,
            estimated_completion=data.get("estimated_completion"),
        )
    elif event_type == "build_completed":
        updates.update(
            build_completed_at=now_iso,
            final_progress=100,
            build_artifacts=data.get("artifacts") or {},
            deployment_url=data.get("deployment_url"),
            repository_url=data.get("repository_url"),
            build_duration_ms=data.get("duration_ms"),
        )
    elif event_type == "build_failed":
        updates.update(
            build_failed_at=now_iso,
            failure_reason=data.get("error") or data.get("message") or "Build failed",
            failure_step=data.get("failed_step") or data.get("step"),
            failure_code=data.get("error_code"),
            build_logs_url=data.get("logs_url"),
        )
    elif event_type == "build_cancelled":
        updates.update(
            build_cancelled_at=now_iso,
            cancellation_reason=data.get("reason") or "Build cancelled",
            cancelled_by=data.get("cancelled_by"),
        )
    elif event_type == "file_generated":
        files = list(metadata.get("generated_files") or [])
        files.append(
            {
                "file_path": data.get("file_path"),
                "file_type": data.get("file_type"),
                "size_bytes": data.get("size_bytes"),
                "generated_at": now_iso,
            }
        )
        updates["generated_files"] = files[-MAX_TRACKED_FILES:]
        updates["last_file_generated"] = data.get("file_path")
    elif event_type == "log_entry":
        level = str(data.get("level") or "").lower()
        if level in TRACKED_LOG_LEVELS:
            logs = list(metadata.get("recent_logs") or [])
            logs.append(
                {
                    "level": level,
                    "message": data.get("message"),
                    "component": data.get("component"),
                    "timestamp": now_iso,
                }
            )
            updates["recent_logs"] = logs[-MAX_TRACKED_LOG_ENTRIES:]

    return updates


async def apply_build_event(
    session: AsyncSession, payload: BuildWebhookPayload
) -> BuildEventOutcome:
    """Apply one build-service event inside the caller's transaction.

    The caller commits, then announces outcome.transitions and broadcasts
    the build event (see PipelineStages.process_webhook).
    """
    event_type = map_build_event_type(payload.event_type)
    project = await _find_build_project(session, payload)
    if project is None:
        log.warning(
            "build_event_unknown_build",
            build_id=payload.build_id,
            event_type=payload.event_type,
        )
        return BuildEventOutcome(status="ignored", event_type=event_type, reason="unknown_build")

    outcome = BuildEventOutcome(
        status="applied",
        event_type=event_type,
        project_id=project.id,
        owner_id=project.owner_id,
        data=payload.data,
    )
    metadata = dict(project.project_metadata or {})
    sequence = payload.effective_sequence
    last_sequence = metadata.get("last_sequence_number")

    if sequence is not None and last_sequence is not None and sequence <= last_sequence:
        log.warning(
            "build_event_out_of_order",
            project_id=str(project.id),
            event_type=event_type,
            sequence_number=sequence,
            last_sequence_number=last_sequence,
        )
        outcome.status, outcome.reason = "skipped", "out_of_order"
        return outcome

    if project.status.is_terminal and event_type in TERMINAL_BUILD_EVENTS:
        log.info(
            "build_event_terminal_replay_ignored",
            project_id=str(project.id),
            event_type=event_type,
            status=project.status.value,
        )
        outcome.status, outcome.reason = "ignored", "terminal_replay"
        return outcome

    now_iso = utcnow().isoformat()
    session.add(
        BuildEvent(
            project_id=project.id,
            build_id=payload.build_id,
            event_type=event_type,
            payload=payload.data,
            sequence_number=sequence,
            created_at=utcnow(),
        )
    )

    metadata_updates = _event_metadata(event_type, payload.data, metadata, now_iso)
    metadata_updates["last_webhook_event"] = payload.event_type
    metadata_updates["last_webhook_timestamp"] = now_iso
    if sequence is not None:
        metadata_updates["last_sequence_number"] = sequence

    project.project_metadata = {**metadata, **metadata_updates}

    target = BUILD_EVENT_TRANSITIONS.get(event_type)
    if target is not None and not project.status.is_terminal:
        if project.status == ProjectStatus.READY_TO_BUILD and target != ProjectStatus.BUILDING:
            # Webhook overtook the trigger stage's own transition
            outcome.transitions.append(
                await apply_transition(session, project, ProjectStatus.BUILDING)
            )
        before_build = project.status in (ProjectStatus.ANALYZING, ProjectStatus.PLANNING)
        if before_build and target in (ProjectStatus.BUILDING, ProjectStatus.COMPLETED):
            log.warning(
                "build_event_before_build_stage",
                project_id=str(project.id),
                event_type=event_type,
                status=project.status.value,
            )
        else:
            outcome.transitions.append(
                await apply_transition(
                    session, project, target, error=metadata_updates.get("failure_reason")
                )
            )

    await session.flush()
    log.info(
        "build_event_applied",
        project_id=str(project.id),
        build_id=payload.build_id,
        event_type=event_type,
        sequence_number=sequence,
        status=project.status.value,
    )
    return outcome


async def handle_conversation_event(
    state_machine: ProjectStateMachine, payload: ConversationWebhookPayload
) -> dict[str, Any]:
    """React to a conversation-provider event.

    conversation_ended / transcript_ready start the pipeline for a new
    conversation, or retry a failed project that still has retries left.
    Other known events are acknowledged without side effects.
    """
    event_type = payload.event_type
    conversation_id = payload.conversation_id

    if event_type not in CONVERSATION_PIPELINE_EVENTS:
        status = "acknowledged" if event_type in CONVERSATION_ACKNOWLEDGED_EVENTS else "ignored"
        log.info(
            "conversation_event_received",
            event_type=event_type,
            conversation_id=conversation_id,
            status=status,
        )
        return {"status": status, "event_type": event_type}

    async with state_machine.session_factory() as session:
        project = await session.scalar(
            select(Project).where(Project.conversation_id == conversation_id)
        )

    if project is not None:
        if project.status == ProjectStatus.FAILED and project.retry_count < MAX_PROJECT_RETRIES:
            result = await state_machine.retry_project(project.id)
            log.info(
                "failed_project_retried_from_webhook",
                project_id=str(project.id),
                conversation_id=conversation_id,
            )
            return {
                "status": "retried",
                "project_id": str(project.id),
                "project_status": result.to_status.value,
            }
        log.info(
            "conversation_already_processed",
            project_id=str(project.id),
            conversation_id=conversation_id,
            status=project.status.value,
        )
        return {
            "status": "already_processing",
            "project_id": str(project.id),
            "project_status": project.status.value,
        }

    data = payload.data
    transcript_url = data.get("transcript_url")
    summary = data.get("summary") or data.get("conversation_summary")
    if not transcript_url and not summary:
        log.warning(
            "conversation_event_without_transcript",
            conversation_id=conversation_id,
            event_type=event_type,
        )
        return {"status": "skipped", "reason": "no_transcript"}

    project, created = await state_machine.request_analysis(
        conversation_id,
        transcript_url=transcript_url,
        summary=summary,
        metadata={
            "trigger_event": event_type,
            "duration_seconds": data.get("duration_seconds"),
            "participant_count": data.get("participant_count"),
            "recording_url": data.get("recording_url"),
        },
        owner_id=data.get("user_id"),
        priority=CONVERSATION_ANALYSIS_PRIORITY,
    )
    return {
        "status": "analysis_requested" if created else "already_processing",
        "project_id": str(project.id),
        "project_status": project.status.value,
    }
