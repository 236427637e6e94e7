"""Validation and scoring of analysis results and project plans.

Pure functions, no I/O. The pipeline stages call these between the analysis
service and the state machine:

    analysis JSON → validate_analysis() → determine_priority()
    plan JSON     → validate_plan() → calculate_complexity_score()
    stored plan   → format_build_request() → build service
"""

import math
import uuid
from typing import Any

from pydantic import ValidationError

from app.constants import (
    COMPLEXITY_PRIORITY_BONUS,
    FAST_TIMELINE_KEYWORDS,
    FEATURE_PRIORITY_SCORES,
    HIGH_VALUE_FEATURE_KEYWORDS,
    MAX_COMPLEXITY_SCORE,
    TECH_COMPLEXITY,
    URGENT_TIMELINE_KEYWORDS,
)
from app.exceptions import AIAnalysisError
from app.models import Project
from app.schemas.plan import ConversationAnalysis, PlanSummary, ProjectPlan

MAX_PRIORITY = 5


def _validation_message(prefix: str, error: ValidationError) -> str:
    problems = [
        f"{'.'.join(str(part) for part in item['loc']) or 'document'}: {item['msg']}"
        for item in error.errors()
    ]
    return f"{prefix}: {'; '.join(problems)}"


def validate_analysis(document: dict[str, Any]) -> ConversationAnalysis:
    """Validate an analysis document.

    Raises:
        AIAnalysisError: Missing project name, description or features.
    """
    try:
        return ConversationAnalysis.model_validate(document)
    except ValidationError as e:
        raise AIAnalysisError(_validation_message("Invalid conversation analysis", e)) from e


def validate_plan(document: dict[str, Any]) -> ProjectPlan:
    """Validate a plan document.

    Raises:
        AIAnalysisError: Missing name/description, incomplete tech stack,
            empty or malformed features, or no timeline estimate.
    """
    try:
        return ProjectPlan.model_validate(document)
    except ValidationError as e:
        raise AIAnalysisError(_validation_message("Invalid project plan", e)) from e


def _as_list(value: list[str] | str | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _first(value: list[str] | str) -> str:
    values = _as_list(value)
    return values[0] if values else ""


def determine_priority(analysis: ConversationAnalysis) -> int:
    """Queue priority (1-5) for a project, from its analysis.

    Base 1, plus complexity (simple +1, medium +2, complex +3), plus
    timeline urgency (urgent/asap/immediately +2, week/fast +1), plus 1 when
    any feature touches revenue. Capped at 5.

    Example:
        >>> determine_priority(validate_analysis({
        ...     "projectName": "Shop", "description": "Store",
        ...     "features": ["Payment processing"],
        ...     "preferences": {"complexity": "complex", "timeline": "ASAP"},
        ... }))
        5
    """
    priority = 1
    preferences = analysis.preferences

    priority += COMPLEXITY_PRIORITY_BONUS.get(preferences.complexity, 2)

    timeline = (preferences.timeline or "").lower()
    if any(keyword in timeline for keyword in URGENT_TIMELINE_KEYWORDS):
        priority += 2
    elif any(keyword in timeline for keyword in FAST_TIMELINE_KEYWORDS):
        priority += 1

    feature_text = " ".join(str(feature).lower() for feature in analysis.features)
    if any(keyword in feature_text for keyword in HIGH_VALUE_FEATURE_KEYWORDS):
        priority += 1

    return min(priority, MAX_PRIORITY)


def calculate_complexity_score(plan: ProjectPlan) -> int:
    """Relative build complexity, 0-100.

    2 per feature, plus each feature's own complexity, plus a weight per
    technology in the stack (TECH_COMPLEXITY, unlisted = 1), plus one point
    per 10 estimated hours.
    """
    score = len(plan.features) * 2
    score += sum(feature.complexity for feature in plan.features)

    stack = plan.tech_stack
    technologies = _as_list(stack.frontend) + _as_list(stack.backend) + _as_list(stack.database)
    score += sum(TECH_COMPLEXITY.get(tech, 1) for tech in technologies)

    score += math.floor(plan.timeline.estimated_hours / 10)
    return min(score, MAX_COMPLEXITY_SCORE)


def summarize_plan(project_id: uuid.UUID, status: str, plan: ProjectPlan) -> PlanSummary:
    return PlanSummary(
        project_id=project_id,
        status=status,
        plan_name=plan.name,
        features_count=len(plan.features),
        estimated_hours=plan.timeline.estimated_hours,
        phases_count=len(plan.timeline.phases),
        tech_stack=plan.tech_stack.model_dump(exclude_none=True),
        complexity_score=calculate_complexity_score(plan),
    )


def format_build_request(plan: ProjectPlan, project: Project, callback_url: str) -> dict[str, Any]:
    """Build-service request body for a validated plan.

    Multi-valued stack entries are reduced to their primary technology and
    feature priorities are sent as scores (high 3, medium 2, low 1).
    """
    return {
        "name": plan.name,
        "description": plan.description,
        "techStack": {
            "frontend": _first(plan.tech_stack.frontend),
            "backend": _first(plan.tech_stack.backend),
            "database": _first(plan.tech_stack.database),
        },
        "features": [
            {
                "name": feature.name,
                "description": feature.description,
                "priority": FEATURE_PRIORITY_SCORES.get(feature.priority.lower(), 2),
            }
            for feature in plan.features
        ],
        "architecture": plan.architecture.get("type"),
        "timeline": plan.timeline.estimated_hours,
        "webhook_url": callback_url,
        "real_time_updates": True,
        "metadata": {
            "conversation_id": project.conversation_id,
            "project_id": str(project.id),
            "priority": project.priority,
            "file_structure": plan.file_structure,
            "dependencies": plan.dependencies,
            "build_config": plan.build_config,
        },
    }
