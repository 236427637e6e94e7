"""FastAPI application for the conversation-to-build pipeline.

This is the API process entry point. It hosts the pipeline entry points,
webhook receivers, rate-limit administration, event broadcast and the live
WebSocket streams. Stage work runs in separate worker processes
(python -m app.worker).
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.clients.analysis import AnalysisClient
from app.clients.build_service import BuildServiceClient
from app.clients.conversation import ConversationClient
from app.config import get_rate_limit_rules_file
from app.database import require_session_factory
from app.exceptions import PipelineError
from app.routes import broadcast, pipeline, rate_limit, webhooks
from app.services.broadcaster import EventBroadcaster, SubscriptionHub
from app.services.maintenance import maintenance_loop
from app.services.pipeline_stages import PipelineStages
from app.services.rate_limiter import RateLimiter, load_rules
from app.services.state_machine import ProjectStateMachine
from app.utils.logging import configure_logging, get_logger

log = get_logger(__name__)

SERVICE_NAME = "conversation-pipeline"
VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown of shared services and background tasks.

    Startup:
    - Build hub, broadcaster, state machine, rate limiter, clients, stages
    - Start maintenance_loop background task

    Shutdown:
    - Cancel maintenance task gracefully
    - Close HTTP client connections
    """
    configure_logging()

    session_factory = require_session_factory()
    broadcaster = EventBroadcaster(session_factory, SubscriptionHub())
    state_machine = ProjectStateMachine(session_factory, broadcaster)
    rate_limiter = RateLimiter(load_rules(get_rate_limit_rules_file()))
    clients = (ConversationClient(), AnalysisClient(), BuildServiceClient())
    conversation_client, analysis_client, build_client = clients

    app.state.session_factory = session_factory
    app.state.broadcaster = broadcaster
    app.state.state_machine = state_machine
    app.state.rate_limiter = rate_limiter
    app.state.stages = PipelineStages(
        session_factory,
        state_machine,
        broadcaster,
        conversation_client=conversation_client,
        analysis_client=analysis_client,
        build_client=build_client,
    )

    maintenance_task = asyncio.create_task(
        maintenance_loop(session_factory, rate_limiter, state_machine)
    )
    log.info("api_started", rules=sorted(rate_limiter.rules))

    yield  # Application runs here

    log.info("shutting_down_maintenance_loop")
    maintenance_task.cancel()
    try:
        await maintenance_task
    except asyncio.CancelledError:
        log.info("maintenance_task_cancelled")

    for client in clients:
        await client.close()


app = FastAPI(
    title="Conversation Pipeline - Orchestration Core",
    description=(
        "Turns recorded conversations into analyzed, planned and built software projects"
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.include_router(pipeline.router)
app.include_router(rate_limit.router)
app.include_router(broadcast.router)
app.include_router(webhooks.router)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Return {"error", "code"} with the exception's HTTP status."""
    level = log.error if exc.status_code >= 500 else log.info
    level(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        error=exc.message,
        **exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Liveness check for deployment validation."""
    return JSONResponse(content={"status": "healthy", "service": SERVICE_NAME})


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    return JSONResponse(
        content={
            "service": SERVICE_NAME,
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
