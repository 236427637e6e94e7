"""Inbound webhook routes.

- POST /api/v1/webhooks/build - Build-service lifecycle events
- POST /api/v1/webhooks/conversation - Conversation-provider events

Pattern:
- Verify signature (fast, no DB)
- Parse payload (fast, validation)
- Record delivery id + enqueue process_webhook task (one short transaction)
- Return 200 immediately; a worker applies the event
"""

import time

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_build_webhook_secret, get_conversation_webhook_secret
from app.dependencies import get_session_factory
from app.schemas.webhook import BuildWebhookPayload, ConversationWebhookPayload
from app.services.webhook_handler import (
    SOURCE_BUILD,
    SOURCE_CONVERSATION,
    accept_delivery,
    derive_delivery_id,
    verify_webhook_signature,
)
from app.utils.logging import get_logger

log = get_logger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

SLOW_RESPONSE_MS = 500


def _parse(schema: type[BaseModel], body: bytes, source: str) -> BaseModel:
    try:
        return schema.model_validate_json(body)
    except ValidationError as e:
        log.warning(
            "webhook_invalid_payload",
            source=source,
            error=str(e),
            body=body.decode(errors="replace")[:200],
        )
        raise HTTPException(status_code=400, detail="Invalid payload format") from e


async def _accept(
    session_factory: async_sessionmaker[AsyncSession],
    source: str,
    delivery_id: str,
    payload: BaseModel,
    start_time: float,
) -> JSONResponse:
    task_id = await accept_delivery(
        session_factory,
        source,
        delivery_id,
        payload.event_type,
        payload.model_dump(mode="json"),
    )

    elapsed_ms = (time.time() - start_time) * 1000
    if elapsed_ms > SLOW_RESPONSE_MS:
        log.warning("webhook_slow_response", source=source, elapsed_ms=elapsed_ms)

    if task_id is None:
        return JSONResponse(
            status_code=200, content={"status": "duplicate", "delivery_id": delivery_id}
        )
    return JSONResponse(
        status_code=200,
        content={"status": "accepted", "delivery_id": delivery_id, "task_id": str(task_id)},
    )


@router.post("/build")
async def handle_build_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> JSONResponse:
    """Handle build-service events.

    Returns:
        200 OK: {"status": "accepted"} or {"status": "duplicate"}
        401 Unauthorized: Invalid or stale signature
        400 Bad Request: Invalid payload format
    """
    start_time = time.time()
    body = await request.body()
    signature = request.headers.get("x-build-signature")
    timestamp = request.headers.get("x-build-timestamp")

    if not verify_webhook_signature(body, signature, get_build_webhook_secret(), timestamp):
        log.warning(
            "webhook_unauthorized",
            source=SOURCE_BUILD,
            signature=signature[:8] + "..." if signature else None,
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    payload = _parse(BuildWebhookPayload, body, SOURCE_BUILD)
    delivery_id = derive_delivery_id(
        body, request.headers.get("x-build-webhook-id"), payload.webhook_id
    )
    return await _accept(session_factory, SOURCE_BUILD, delivery_id, payload, start_time)


@router.post("/conversation")
async def handle_conversation_webhook(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> JSONResponse:
    """Handle conversation-provider events (same responses as /build)."""
    start_time = time.time()
    body = await request.body()
    signature = request.headers.get("x-conversation-signature")

    if not verify_webhook_signature(body, signature, get_conversation_webhook_secret()):
        log.warning(
            "webhook_unauthorized",
            source=SOURCE_CONVERSATION,
            signature=signature[:8] + "..." if signature else None,
        )
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    payload = _parse(ConversationWebhookPayload, body, SOURCE_CONVERSATION)
    delivery_id = derive_delivery_id(
        body, request.headers.get("x-conversation-webhook-id"), payload.event_id
    )
    return await _accept(session_factory, SOURCE_CONVERSATION, delivery_id, payload, start_time)
