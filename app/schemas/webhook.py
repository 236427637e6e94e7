"""Inbound webhook payload schemas.

Build service (POST /api/v1/webhooks/build):
    {"build_id": "...", "project_id": "...", "event_type": "build.progress",
     "data": {"progress": 40, "step": "Compiling"}, "sequence_number": 7}

Conversation provider (POST /api/v1/webhooks/conversation):
    {"event_type": "conversation_ended", "conversation_id": "...",
     "data": {"transcript_url": "...", "summary": "..."}}

Deliveries are deduplicated by the delivery id header, falling back to
`webhook_id` / `event_id` in the body.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BuildWebhookPayload(BaseModel):
    """Build-service lifecycle event.

    Supported event types:
    - build.started / build.progress / build.completed / build.failed / build.cancelled
    - file.generated
    - log.entry (also the fallback for unrecognized types)
    """

    model_config = ConfigDict(extra="allow")

    build_id: str = Field(..., min_length=1, max_length=100)
    project_id: str | None = Field(default=None, max_length=100)
    event_type: str = Field(..., min_length=1, max_length=50)
    data: dict[str, Any] = Field(default_factory=dict)
    sequence_number: int | None = Field(default=None, ge=0)
    webhook_id: str | None = Field(default=None, max_length=150)

    @property
    def effective_sequence(self) -> int | None:
        """Sequence number from the envelope, or from data when the envelope lacks it."""
        if self.sequence_number is not None:
            return self.sequence_number
        value = self.data.get("sequence_number")
        return value if isinstance(value, int) and value >= 0 else None


class ConversationWebhookPayload(BaseModel):
    """Conversation-provider lifecycle event."""

    model_config = ConfigDict(extra="allow")

    event_type: str = Field(..., min_length=1, max_length=50)
    conversation_id: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)
    event_id: str | None = Field(default=None, max_length=150)
