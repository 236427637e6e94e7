"""Event broadcaster: audit, live fan-out, and per-user notifications.

broadcast() performs four independent effects. Each one is best effort:
a failure is logged, recorded in the result's warnings list, and the
remaining effects still run.

    1. Persist a BroadcastEvent audit row
    2. Publish to "{channel}:{project_id}" on the in-process hub
    3. With a user id: persist a UserNotification and publish to "user:{user_id}"
    4. Touch Project.last_activity_at

Live subscribers (WebSocket connections in the API process) receive messages
through SubscriptionHub. Each subscriber owns a bounded asyncio.Queue; a
subscriber that stops reading loses messages instead of blocking publishers.
"""

import asyncio
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_retention_days
from app.models import (
    BroadcastChannel,
    BroadcastEvent,
    BuildEvent,
    EventType,
    Project,
    RateLimitLog,
    UserNotification,
    WebhookEvent,
    utcnow,
)
from app.utils.logging import get_logger

log = get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


def _progress_message(data: dict[str, Any]) -> str:
    return f"{data.get('step') or 'Processing'}: {data.get('progress', 0)}% complete"


# One entry per EventType; anything else uses the generic fallback
EVENT_MESSAGES: dict[EventType, Callable[[dict[str, Any]], str]] = {
    EventType.PROJECT_CREATED: lambda data: "New project created",
    EventType.ANALYSIS_STARTED: lambda data: "Starting conversation analysis",
    EventType.ANALYSIS_COMPLETED: lambda data: "Conversation analysis completed",
    EventType.PLAN_GENERATION_STARTED: lambda data: "Generating project plan",
    EventType.PLAN_GENERATION_COMPLETED: lambda data: "Project plan generated successfully",
    EventType.BUILD_TRIGGERED: lambda data: "Build process initiated",
    EventType.BUILD_STARTED: lambda data: "Build process started",
    EventType.BUILD_PROGRESS: _progress_message,
    EventType.BUILD_COMPLETED: lambda data: "Build completed successfully",
    EventType.BUILD_FAILED: lambda data: f"Build failed: {data.get('error') or 'Unknown error'}",
    EventType.BUILD_CANCELLED: lambda data: "Build cancelled",
    EventType.FILE_GENERATED: lambda data: f"Generated {data.get('file_name') or 'file'}",
    EventType.LOG_ENTRY: lambda data: str(data.get("message") or "Build log entry"),
    EventType.STATUS_CHANGED: lambda data: f"Status changed to {data.get('status') or 'unknown'}",
    EventType.PROJECT_CANCELLED: lambda data: "Project cancelled",
    EventType.TASK_FAILED: lambda data: f"Task failed: {data.get('error') or 'Unknown error'}",
}

NOTIFICATION_TITLES: dict[EventType, str] = {
    EventType.PROJECT_CREATED: "Project Created",
    EventType.ANALYSIS_COMPLETED: "Analysis Complete",
    EventType.PLAN_GENERATION_COMPLETED: "Plan Ready",
    EventType.BUILD_COMPLETED: "Build Complete",
    EventType.BUILD_FAILED: "Build Failed",
    EventType.BUILD_PROGRESS: "Build Update",
}
DEFAULT_NOTIFICATION_TITLE = "Project Update"


def parse_event_type(event_type: EventType | str) -> EventType | None:
    """Return the EventType for a name, or None for an unrecognized type."""
    if isinstance(event_type, EventType):
        return event_type
    try:
        return EventType(event_type)
    except ValueError:
        return None


def generate_event_message(event_type: EventType | str, data: dict[str, Any]) -> str:
    """Human-readable message for an event.

    Example:
        >>> generate_event_message("build_progress", {"step": "Compiling", "progress": 40})
        'Compiling: 40% complete'
        >>> generate_event_message("something_new", {})
        'Event: something_new'
    """
    known = parse_event_type(event_type)
    if known is None:
        return f"Event: {event_type}"
    return EVENT_MESSAGES[known](data)


def generate_notification_title(event_type: EventType | str) -> str:
    known = parse_event_type(event_type)
    return NOTIFICATION_TITLES.get(known, DEFAULT_NOTIFICATION_TITLE)


def project_channel(channel: BroadcastChannel, project_id: uuid.UUID | str | None) -> str:
    if project_id is None:
        return channel.value
    return f"{channel.value}:{project_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class SubscriptionHub:
    """In-process publish/subscribe keyed by channel name."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[asyncio.Queue]:
        """Register a subscriber queue for the lifetime of the context."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[channel].add(queue)
        log.debug("subscriber_added", channel=channel)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(channel)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]
            log.debug("subscriber_removed", channel=channel)

    def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Deliver a message to every subscriber of a channel.

        Returns:
            Number of subscribers that accepted the message.
        """
        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                log.warning("subscriber_queue_full", channel=channel)
        return delivered

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))


@dataclass
class BroadcastResult:
    """Outcome of broadcast().

    broadcasted is always True once broadcast() returns; degraded effects
    show up in warnings.
    """

    event_id: uuid.UUID
    channel: str
    message: str
    timestamp: datetime
    subscribers_notified: int = 0
    broadcasted: bool = True
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "broadcasted": self.broadcasted,
            "event_id": str(self.event_id),
            "channel": self.channel,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "subscribers_notified": self.subscribers_notified,
            "warnings": self.warnings,
        }


class EventBroadcaster:
    """Publishes pipeline events to the audit log, live subscribers, and users.

    Args:
        session_factory: Factory for the short transactions each effect uses.
        hub: In-process pub/sub hub (one per API process).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        hub: SubscriptionHub | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub or SubscriptionHub()

    async def broadcast(
        self,
        event_type: EventType | str,
        payload: dict[str, Any] | None = None,
        project_id: uuid.UUID | None = None,
        channel: BroadcastChannel = BroadcastChannel.PROJECT_UPDATES,
        user_id: str | None = None,
        *,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BroadcastResult:
        """Broadcast one event.

        Args:
            event_type: EventType or any string (unknown types get a generic message).
            payload: Event data, also used to build the message.
            project_id: Project the event is about.
            channel: Logical channel.
            user_id: Also notify this user personally.
            message: Explicit message overriding the generated one.
            metadata: Extra data merged into the published envelope.

        Returns:
            BroadcastResult with event id, subscriber count and warnings.
        """
        data = payload or {}
        type_name = event_type.value if isinstance(event_type, EventType) else str(event_type)
        event_id = uuid.uuid4()
        timestamp = utcnow()
        text = message or generate_event_message(type_name, data)
        channel_name = project_channel(channel, project_id)

        result = BroadcastResult(
            event_id=event_id,
            channel=channel_name,
            message=text,
            timestamp=timestamp,
        )

        envelope = {
            "event_id": str(event_id),
            "event_type": type_name,
            "channel": channel.value,
            "project_id": str(project_id) if project_id else None,
            "message": text,
            "data": data,
            "metadata": metadata or {},
            "timestamp": timestamp.isoformat(),
        }

        # 1. Audit record
        try:
            async with self.session_factory() as session, session.begin():
                session.add(
                    BroadcastEvent(
                        id=event_id,
                        event_type=type_name,
                        channel=channel.value,
                        project_id=project_id,
                        user_id=user_id,
                        message=text,
                        payload=data,
                        created_at=timestamp,
                    )
                )
        except SQLAlchemyError as e:
            log.warning("broadcast_event_store_failed", event_id=str(event_id), error=str(e))
            result.warnings.append(f"Failed to store broadcast event: {e}")

        # 2. Live channel
        result.subscribers_notified += self.hub.publish(channel_name, envelope)

        # 3. Personal notification
        if user_id:
            try:
                async with self.session_factory() as session, session.begin():
                    session.add(
                        UserNotification(
                            user_id=user_id,
                            project_id=project_id,
                            event_type=type_name,
                            title=generate_notification_title(type_name),
                            message=text,
                            data=data,
                            created_at=timestamp,
                        )
                    )
            except SQLAlchemyError as e:
                log.warning("user_notification_store_failed", user_id=user_id, error=str(e))
                result.warnings.append(f"Failed to store user notification: {e}")

            result.subscribers_notified += self.hub.publish(user_channel(user_id), envelope)

        # 4. Project activity
        if project_id is not None:
            try:
                async with self.session_factory() as session, session.begin():
                    await session.execute(
                        update(Project)
                        .where(Project.id == project_id)
                        .values(last_activity_at=timestamp)
                        .execution_options(synchronize_session=False)
                    )
            except SQLAlchemyError as e:
                log.warning(
                    "project_activity_update_failed", project_id=str(project_id), error=str(e)
                )
                result.warnings.append(f"Failed to update project activity: {e}")

        log.info(
            "event_broadcasted",
            event_id=str(event_id),
            event_type=type_name,
            channel=channel_name,
            subscribers_notified=result.subscribers_notified,
            warnings=len(result.warnings),
        )
        return result


async def purge_expired(
    session: AsyncSession,
    retention_days: dict[str, int] | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Delete audit and notification rows past their retention window.

    Unread notifications are kept regardless of age.

    Args:
        session: Active database session (caller commits).
        retention_days: Table name → days (default from config).
        now: Reference time (default utcnow()).

    Returns:
        Table name → rows deleted.
    """
    retention = retention_days or get_retention_days()
    current = now or utcnow()

    def cutoff(table: str) -> datetime:
        return current - timedelta(days=retention[table])

    statements = {
        "broadcast_events": delete(BroadcastEvent).where(
            BroadcastEvent.created_at < cutoff("broadcast_events")
        ),
        "user_notifications": delete(UserNotification).where(
            UserNotification.is_read.is_(True),
            UserNotification.created_at < cutoff("user_notifications"),
        ),
        "build_events": delete(BuildEvent).where(BuildEvent.created_at < cutoff("build_events")),
        "webhook_events": delete(WebhookEvent).where(
            WebhookEvent.processed_at < cutoff("webhook_events")
        ),
        "rate_limit_logs": delete(RateLimitLog).where(
            RateLimitLog.created_at < cutoff("rate_limit_logs")
        ),
    }

    deleted: dict[str, int] = {}
    for table, statement in statements.items():
        result = await session.execute(statement.execution_options(synchronize_session=False))
        deleted[table] = result.rowcount or 0

    if any(deleted.values()):
        log.info("retention_purge_completed", **deleted)
    return deleted
