"""Periodic housekeeping for the pipeline.

One pass (run_maintenance):
    1. Sweep expired rate-limit counters and lapsed IP blocks
    2. Requeue tasks stuck in processing past the stall timeout
    3. Reconcile projects whose stage has no task driving it
    4. Purge audit rows past their retention window
    5. Snapshot queue depth per task status

A pass that had to requeue stalled tasks or repair stuck projects sends a
WARNING operator alert with the summary.

The API process runs maintenance_loop() as a lifespan background task.
Every step is idempotent, so several API replicas may run it concurrently.
"""

import asyncio
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_maintenance_interval, get_stall_timeout_seconds
from app.exceptions import PipelineError
from app.queue import get_queue_stats, requeue_stalled
from app.services.broadcaster import purge_expired
from app.services.rate_limiter import RateLimiter
from app.services.state_machine import ProjectStateMachine
from app.utils.alerts import send_alert
from app.utils.logging import get_logger

log = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 10


async def run_maintenance(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: RateLimiter,
    state_machine: ProjectStateMachine,
) -> dict[str, Any]:
    """Run one housekeeping pass.

    Returns:
        Counts per step plus the queue snapshot, e.g.
        {"requeued": 1, "reconciled": 0, ..., "queue": {"pending": 4, ...}}
    """
    async with session_factory() as session, session.begin():
        swept = await rate_limiter.sweep(session)

    async with session_factory() as session, session.begin():
        requeued = await requeue_stalled(session, get_stall_timeout_seconds())

    reconciled = await state_machine.reconcile()

    async with session_factory() as session, session.begin():
        purged = await purge_expired(session)
        queue = await get_queue_stats(session)

    summary = {
        **swept,
        "requeued": requeued,
        "reconciled": reconciled,
        "purged": sum(purged.values()),
        "queue": queue,
    }
    if requeued or reconciled:
        log.info("maintenance_pass_completed", **summary)
        await send_alert(
            "WARNING",
            f"Maintenance requeued {requeued} stalled task(s) "
            f"and reconciled {reconciled} project(s)",
            summary,
        )
    return summary


async def maintenance_loop(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: RateLimiter,
    state_machine: ProjectStateMachine,
    interval: int | None = None,
) -> None:
    """Background task: run_maintenance() every `interval` seconds until cancelled.

    Database and pipeline errors are logged and the loop continues.
    """
    sleep_seconds = interval or get_maintenance_interval()
    log.info("maintenance_loop_started", interval_seconds=sleep_seconds)

    while True:
        try:
            await run_maintenance(session_factory, rate_limiter, state_machine)
            await asyncio.sleep(sleep_seconds)
        except asyncio.CancelledError:
            log.info("maintenance_loop_cancelled")
            break
        except (SQLAlchemyError, PipelineError, OSError, TimeoutError) as e:
            log.error(
                "maintenance_loop_error",
                correlation_id=str(uuid.uuid4()),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await asyncio.sleep(ERROR_BACKOFF_SECONDS)
