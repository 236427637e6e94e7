"""Pydantic schemas for POST /api/v1/broadcast."""

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from app.models import BroadcastChannel


class BroadcastRequest(BaseModel):
    """Broadcast one event.

    event_type is free text: names outside the known event vocabulary are
    accepted and get a generic message.
    """

    event_type: str = Field(..., min_length=1, max_length=50, examples=["build_progress"])
    project_id: UUID | None = None
    user_id: str | None = Field(default=None, max_length=100)
    channel: BroadcastChannel = BroadcastChannel.PROJECT_UPDATES
    data: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
