"""Pydantic schemas for analysis results and project plans.

Both documents come back from the analysis service as JSON with camelCase
keys (projectName, techStack, ...). The models accept either camelCase or
snake_case and dump snake_case for storage.

Schema Naming Convention:
    - ConversationAnalysis: Output of the analysis stage
    - ProjectPlan: Output of the plan-generation stage (stored on Project)
    - PlanSummary: What POST /generate-plan returns
"""

from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class AnalysisPreferences(_Document):
    tech_stack: list[str] = Field(default_factory=list, alias="techStack")
    timeline: str | None = None
    budget: str | None = None
    complexity: str = "medium"

    @field_validator("complexity", mode="before")
    @classmethod
    def normalize_complexity(cls, value: Any) -> str:
        if not value:
            return "medium"
        return str(value).strip().lower()


class ConversationAnalysis(_Document):
    """Structured requirements extracted from a conversation.

    project_name, description and a non-empty feature list are mandatory;
    an analysis without them cannot drive plan generation.
    """

    project_name: str = Field(..., min_length=1, alias="projectName")
    description: str = Field(..., min_length=1)
    summary: str | None = None
    requirements: list[str] = Field(default_factory=list)
    features: list[str | dict[str, Any]] = Field(..., min_length=1)
    preferences: AnalysisPreferences = Field(default_factory=AnalysisPreferences)
    extracted_entities: dict[str, Any] = Field(default_factory=dict, alias="extractedEntities")


class TechStack(_Document):
    frontend: list[str] | str
    backend: list[str] | str
    database: list[str] | str
    deployment: str | None = None

    @field_validator("frontend", "backend", "database")
    @classmethod
    def require_value(cls, value: list[str] | str) -> list[str] | str:
        if not value:
            raise ValueError("must not be empty")
        return value


class Feature(_Document):
    id: str | None = None
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    priority: str = "medium"
    complexity: int = Field(default=1, ge=0)
    dependencies: list[str] = Field(default_factory=list)
    acceptance_criteria: list[str] = Field(default_factory=list, alias="acceptanceCriteria")


class Phase(_Document):
    name: str
    description: str | None = None
    estimated_hours: float = Field(default=0, ge=0)
    tasks: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class Timeline(_Document):
    estimated_hours: float = Field(..., ge=0)
    phases: list[Phase] = Field(default_factory=list)


class ProjectPlan(_Document):
    """Build-ready project plan.

    Required: name, description, tech stack (frontend, backend, database),
    at least one feature with name and description, and a timeline with
    estimated_hours.
    """

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    tech_stack: TechStack = Field(..., alias="techStack")
    features: list[Feature] = Field(..., min_length=1)
    architecture: dict[str, Any] = Field(default_factory=dict)
    timeline: Timeline
    file_structure: list[dict[str, Any]] = Field(default_factory=list, alias="fileStructure")
    dependencies: list[dict[str, Any]] = Field(default_factory=list)
    build_config: dict[str, Any] = Field(default_factory=dict, alias="buildConfig")


class PlanSummary(BaseModel):
    """Response body of POST /api/v1/generate-plan."""

    project_id: UUID
    status: str
    plan_name: str
    features_count: int
    estimated_hours: float
    phases_count: int
    tech_stack: dict[str, Any]
    complexity_score: int
