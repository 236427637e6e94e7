"""Pydantic schemas for the pipeline entry points.

Schema Naming Convention:
    - *Request: Request bodies
    - *Response: Response bodies
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.constants import DEFAULT_PROJECT_PRIORITY
from app.models import ProjectStatus


class AnalyzeRequest(BaseModel):
    """Body of POST /api/v1/analyze.

    A transcript URL or a summary is needed for the analysis to have
    anything to work with.
    """

    conversation_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Conversation-provider id. One project per conversation.",
        examples=["c8a1f2e4b7"],
    )
    transcript_url: str | None = Field(default=None, max_length=2000)
    summary: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=DEFAULT_PROJECT_PRIORITY, ge=1, le=5)
    user_id: str | None = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def require_source(self) -> "AnalyzeRequest":
        if not self.transcript_url and not self.summary:
            raise ValueError("transcript_url or summary is required")
        return self


class AnalyzeResponse(BaseModel):
    project_id: UUID
    status: str
    created: bool


class GeneratePlanRequest(BaseModel):
    """Body of POST /api/v1/generate-plan."""

    project_id: UUID
    preferences: dict[str, Any] | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CancelResponse(BaseModel):
    project_id: UUID
    status: str
    changed: bool


class BuildEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    build_id: str
    event_type: str
    payload: dict[str, Any]
    sequence_number: int | None
    created_at: datetime


class ProjectResponse(BaseModel):
    """Project state as seen by operators.

    Note:
        Uses from_attributes=True to load directly from the Project model;
        the status enum serializes as its string value.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: str
    owner_id: str | None
    name: str | None
    description: str | None
    status: ProjectStatus
    priority: int
    retry_count: int
    error_message: str | None
    build_job_id: str | None
    build_project_id: str | None
    project_plan: dict[str, Any] | None
    metadata: dict[str, Any] = Field(validation_alias="project_metadata")
    created_at: datetime
    status_changed_at: datetime | None
    last_activity_at: datetime | None
    completed_at: datetime | None


class ProjectDetailResponse(BaseModel):
    """Body of GET /api/v1/projects/{project_id}: the project and its latest build events."""

    project: ProjectResponse
    build_events: list[BuildEventResponse]
