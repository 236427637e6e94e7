"""Worker process entry point for the pipeline orchestration core.

Workers run as separate processes (any number, on any host) sharing the
queued_tasks table. Each one loops:

    claim (short transaction) → run stage handler → complete / fail / cancel
    (short transaction)

No database transaction is held open while a stage talks to an external
service.

Architecture Pattern:
    - Separate Process: Each worker runs as independent Python process
    - Async Execution: All database operations use async/await patterns
    - Short Transactions: Claim → close DB → process → reopen DB → update
    - Graceful Shutdown: Listens for SIGTERM, finishes current task, exits cleanly

Failure handling:
    - ProjectCancelledError: task cancelled, not failed
    - Pipeline errors: their retryable flag decides; anything unexpected
      (deadline exceeded, transport errors, bugs) is retried
    - The queue retries with backoff or fails the task permanently
    - A stage task that fails permanently fails its project and alerts
    - A task the stall sweep took back is left alone (claim lost)
    - An error escaping one iteration is logged; the loop backs off and continues

Usage:
    python -m app.worker
"""

import asyncio
import signal
import sys
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.analysis import AnalysisClient
from app.clients.build_service import BuildServiceClient
from app.clients.conversation import ConversationClient
from app.config import get_database_url, get_worker_id, get_worker_poll_interval
from app.exceptions import PipelineError, ProjectCancelledError, is_retryable_failure
from app.models import EventType, QueuedTask, TaskType
from app.queue import cancel, claim_next, complete, fail
from app.services.broadcaster import EventBroadcaster
from app.services.pipeline_stages import STAGE_TASK_TYPES, PipelineStages
from app.services.state_machine import ProjectStateMachine
from app.utils.alerts import send_alert
from app.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

# Shutdown flag (set by SIGTERM handler)
shutdown_requested = False

# Pause after an iteration of the poll loop raised
ERROR_BACKOFF_SECONDS = 5.0


def signal_handler(signum: int, frame: object) -> None:
    """Handle SIGTERM/SIGINT: finish the current task, then exit.

    Args:
        signum: Signal number (typically SIGTERM = 15)
        frame: Current stack frame (unused)

    Side Effects:
        Sets global shutdown_requested flag to True
    """
    global shutdown_requested
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    shutdown_requested = True


@dataclass
class ClaimedTask:
    """Detached snapshot of a claimed task, safe to use outside its session."""

    id: uuid.UUID
    task_type: TaskType
    payload: dict[str, Any]
    project_id: uuid.UUID | None
    retry_count: int

    @classmethod
    def from_model(cls, task: QueuedTask) -> "ClaimedTask":
        return cls(
            id=task.id,
            task_type=task.task_type,
            payload=dict(task.payload or {}),
            project_id=task.project_id,
            retry_count=task.retry_count,
        )


class PipelineWorker:
    """Claims and executes queued pipeline tasks.

    Args:
        session_factory: Factory for short transactions.
        stages: Stage handlers.
        worker_id: Claimant id recorded on tasks.
        poll_interval: Seconds to sleep when the queue is empty.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stages: PipelineStages,
        worker_id: str | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.stages = stages
        self.worker_id = worker_id or get_worker_id()
        self.poll_interval = get_worker_poll_interval() if poll_interval is None else poll_interval

    async def claim(self) -> ClaimedTask | None:
        async with self.session_factory() as session, session.begin():
            task = await claim_next(session, self.worker_id)
            return ClaimedTask.from_model(task) if task is not None else None

    async def run_once(self) -> bool:
        """Claim and process at most one task.

        Returns:
            True if a task was processed, False if the queue was empty.
        """
        task = await self.claim()
        if task is None:
            return False
        await self.process(task)
        return True

    async def process(self, task: ClaimedTask) -> None:
        log.info(
            "task_processing_started",
            task_id=str(task.id),
            task_type=task.task_type.value,
            worker_id=self.worker_id,
            retry_count=task.retry_count,
        )

        try:
            result = await self.stages.run(task.task_type, task.payload)
        except ProjectCancelledError as e:
            async with self.session_factory() as session, session.begin():
                await cancel(session, task.id, e.message)
            return
        except Exception as e:
            await self.record_failure(task, e)
            return

        async with self.session_factory() as session, session.begin():
            completed = await complete(session, task.id, worker_id=self.worker_id)
        if completed is None:
            return
        log.info(
            "task_processing_completed",
            task_id=str(task.id),
            task_type=task.task_type.value,
            result_status=(result or {}).get("status"),
        )

    async def record_failure(self, task: ClaimedTask, error: Exception) -> None:
        message = str(error) or type(error).__name__
        retryable = error.retryable if isinstance(error, PipelineError) else True
        log.error(
            "task_processing_failed",
            task_id=str(task.id),
            task_type=task.task_type.value,
            error=message,
            error_type=type(error).__name__,
            retryable=retryable,
            exc_info=not retryable,
        )

        async with self.session_factory() as session, session.begin():
            outcome = await fail(
                session, task.id, message, retryable=retryable, worker_id=self.worker_id
            )

        if outcome.exhausted:
            await self.on_exhausted(task, message, transient=is_retryable_failure(error))

    async def on_exhausted(self, task: ClaimedTask, error: str, transient: bool) -> None:
        """A task failed for good: fail its project (stage tasks) and alert."""
        if task.project_id is not None and task.task_type in STAGE_TASK_TYPES:
            await self.stages.state_machine.fail_project(task.project_id, error)

        await self.stages.broadcaster.broadcast(
            EventType.TASK_FAILED,
            {"task_id": str(task.id), "task_type": task.task_type.value, "error": error},
            project_id=task.project_id,
        )
        await send_alert(
            "CRITICAL",
            f"Pipeline task {task.task_type.value} failed permanently",
            {
                "task_id": str(task.id),
                "project_id": str(task.project_id) if task.project_id else "-",
                "error": error,
                "error_class": "transient" if transient else "permanent",
            },
        )

    async def run(self) -> None:
        """Poll until shutdown is requested."""
        log.info("worker_started", worker_id=self.worker_id, poll_interval=self.poll_interval)
        while not shutdown_requested:
            try:
                processed = await self.run_once()
            except Exception as e:
                # Database outage or a bug in failure bookkeeping; keep polling
                log.error(
                    "worker_iteration_failed",
                    worker_id=self.worker_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
                continue
            if not processed:
                await asyncio.sleep(self.poll_interval)
        log.info("worker_stopped", worker_id=self.worker_id)


def build_worker(session_factory: async_sessionmaker[AsyncSession]) -> PipelineWorker:
    """Wire a worker with production clients."""
    broadcaster = EventBroadcaster(session_factory)
    state_machine = ProjectStateMachine(session_factory, broadcaster)
    stages = PipelineStages(
        session_factory,
        state_machine,
        broadcaster,
        conversation_client=ConversationClient(),
        analysis_client=AnalysisClient(),
        build_client=BuildServiceClient(),
    )
    return PipelineWorker(session_factory, stages)


async def worker_main_loop() -> None:
    from app.database import engine, require_session_factory

    worker = build_worker(require_session_factory())
    try:
        await worker.run()
    finally:
        for client in (
            worker.stages.conversation_client,
            worker.stages.analysis_client,
            worker.stages.build_client,
        ):
            await client.close()
        if engine is not None:
            await engine.dispose()
            log.info("sqlalchemy_engine_closed")


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    configure_logging()

    try:
        database_url = get_database_url()
    except ValueError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    # Redact credentials when logging
    database_host = (
        database_url.split("@")[-1].split("/")[0] if "@" in database_url else "local"
    )
    log.info("worker_configuration_loaded", database_url_host=database_host)

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)  # Also handle Ctrl+C for local dev

    try:
        asyncio.run(worker_main_loop())
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), error_type=type(e).__name__, exc_info=True)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
