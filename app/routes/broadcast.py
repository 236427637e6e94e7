"""Event broadcast routes.

- POST /api/v1/broadcast - Publish an event (audit log, live subscribers, user; admin)
- WS /api/v1/ws/projects/{project_id}?channel=project_updates - Live project events
- WS /api/v1/ws/users/{user_id} - Live notifications for one user

Live subscribers only see events published by this API process; workers
publish through the audit log and user notifications.
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from app.dependencies import get_broadcaster, require_admin
from app.models import BroadcastChannel
from app.schemas.broadcast import BroadcastRequest
from app.services.broadcaster import EventBroadcaster, project_channel, user_channel
from app.utils.logging import get_logger

log = get_logger(__name__)
router = APIRouter(prefix="/api/v1", tags=["broadcast"])


@router.post("/broadcast", dependencies=[Depends(require_admin)])
async def broadcast_event(
    body: BroadcastRequest,
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
) -> dict[str, Any]:
    """Broadcast one event.

    Returns:
        {broadcasted, event_id, channel, message, timestamp,
         subscribers_notified, warnings}
    """
    result = await broadcaster.broadcast(
        body.event_type,
        body.data,
        project_id=body.project_id,
        channel=body.channel,
        user_id=body.user_id,
        message=body.message,
        metadata=body.metadata,
    )
    return result.to_dict()


async def _stream(websocket: WebSocket, channel: str) -> None:
    hub = websocket.app.state.broadcaster.hub
    await websocket.accept()
    log.info("websocket_subscribed", channel=channel)
    async with hub.subscribe(channel) as queue:
        try:
            while True:
                message = await queue.get()
                await websocket.send_json(message)
        except WebSocketDisconnect:
            log.info("websocket_disconnected", channel=channel)


@router.websocket("/ws/projects/{project_id}")
async def project_events(
    websocket: WebSocket,
    project_id: UUID,
    channel: BroadcastChannel = Query(default=BroadcastChannel.PROJECT_UPDATES),
) -> None:
    await _stream(websocket, project_channel(channel, project_id))


@router.websocket("/ws/users/{user_id}")
async def user_events(websocket: WebSocket, user_id: str) -> None:
    await _stream(websocket, user_channel(user_id))
