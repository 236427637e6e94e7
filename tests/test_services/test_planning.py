"""Tests for analysis/plan validation and scoring (app/services/planning.py)."""

import uuid

import pytest

from app.exceptions import AIAnalysisError
from app.models import Project, ProjectStatus
from app.services.planning import (
    calculate_complexity_score,
    determine_priority,
    format_build_request,
    summarize_plan,
    validate_analysis,
    validate_plan,
)


class TestValidateAnalysis:
    """Tests for validate_analysis()."""

    def test_p0_valid_analysis(self, sample_analysis):
        """[P0] camelCase analysis documents validate and normalize."""
        analysis = validate_analysis(sample_analysis)

        assert analysis.project_name == "Shop Builder"
        assert analysis.preferences.tech_stack == ["React", "FastAPI"]
        assert analysis.extracted_entities == {"people": ["Ana"]}

    @pytest.mark.parametrize("missing", ["projectName", "description", "features"])
    def test_p0_required_fields(self, sample_analysis, missing):
        """[P0] Name, description and features are mandatory."""
        del sample_analysis[missing]

        with pytest.raises(AIAnalysisError) as exc_info:
            validate_analysis(sample_analysis)

        assert exc_info.value.retryable is True
        assert "Invalid conversation analysis" in exc_info.value.message

    def test_p1_empty_feature_list_rejected(self, sample_analysis):
        """[P1] At least one feature is required."""
        sample_analysis["features"] = []

        with pytest.raises(AIAnalysisError):
            validate_analysis(sample_analysis)

    def test_p2_complexity_defaults_to_medium(self, sample_analysis):
        """[P2] Missing complexity counts as medium."""
        sample_analysis["preferences"] = {"complexity": None}

        assert validate_analysis(sample_analysis).preferences.complexity == "medium"


class TestDeterminePriority:
    """Tests for determine_priority()."""

    def test_p0_sample_priority(self, sample_analysis):
        """[P0] Medium complexity plus a payment feature gives 4."""
        assert determine_priority(validate_analysis(sample_analysis)) == 4

    @pytest.mark.parametrize(
        ("complexity", "timeline", "features", "expected"),
        [
            ("simple", None, ["Blog"], 2),
            ("complex", None, ["Blog"], 4),
            ("simple", "within a week", ["Blog"], 3),
            ("simple", "ASAP please", ["Blog"], 4),
            ("complex", "urgent", ["Enterprise SSO"], 5),
            ("unknown", None, ["Blog"], 3),
        ],
    )
    def test_p1_priority_components(self, complexity, timeline, features, expected):
        """[P1] Complexity, timeline urgency and revenue features add up, capped at 5."""
        analysis = validate_analysis(
            {
                "projectName": "P",
                "description": "D",
                "features": features,
                "preferences": {"complexity": complexity, "timeline": timeline},
            }
        )

        assert determine_priority(analysis) == expected


class TestValidatePlan:
    """Tests for validate_plan() and calculate_complexity_score()."""

    def test_p0_valid_plan(self, sample_plan):
        """[P0] The sample plan validates with aliases resolved."""
        plan = validate_plan(sample_plan)

        assert plan.tech_stack.frontend == ["React"]
        assert plan.timeline.phases[0].estimated_hours == 45
        assert plan.build_config == {"node": "20"}

    @pytest.mark.parametrize(
        "mutate",
        [
            lambda plan: plan.pop("name"),
            lambda plan: plan.pop("techStack"),
            lambda plan: plan["techStack"].update(database=[]),
            lambda plan: plan.update(features=[]),
            lambda plan: plan["features"][0].pop("description"),
            lambda plan: plan["timeline"].pop("estimated_hours"),
        ],
        ids=["no-name", "no-stack", "empty-db", "no-features", "feature-desc", "no-hours"],
    )
    def test_p0_invalid_plans_rejected(self, sample_plan, mutate):
        """[P0] Incomplete plans raise AIAnalysisError."""
        mutate(sample_plan)

        with pytest.raises(AIAnalysisError):
            validate_plan(sample_plan)

    def test_p0_complexity_score(self, sample_plan):
        """[P0] Sample plan scores 22.

        2 features × 2 + (3 + 5) + React 2 + FastAPI 2 + PostgreSQL 2 + 45h // 10
        """
        assert calculate_complexity_score(validate_plan(sample_plan)) == 22

    def test_p1_unlisted_tech_weighs_one_and_score_capped(self, sample_plan):
        """[P1] Unknown technologies add 1; the score never exceeds 100."""
        sample_plan["techStack"]["backend"] = "Elixir"
        assert calculate_complexity_score(validate_plan(sample_plan)) == 21

        sample_plan["timeline"]["estimated_hours"] = 5000
        assert calculate_complexity_score(validate_plan(sample_plan)) == 100

    def test_p1_summary(self, sample_plan):
        """[P1] summarize_plan() reports counts and score."""
        project_id = uuid.uuid4()

        summary = summarize_plan(project_id, "ready_to_build", validate_plan(sample_plan))

        assert summary.project_id == project_id
        assert summary.features_count == 2
        assert summary.phases_count == 1
        assert summary.complexity_score == 22
        assert summary.tech_stack["deployment"] == "docker"


class TestFormatBuildRequest:
    """Tests for format_build_request()."""

    def test_p0_build_request_shape(self, sample_plan):
        """[P0] The build request carries primary technologies, scores and callback."""
        project = Project(
            id=uuid.uuid4(),
            conversation_id="conv-1",
            status=ProjectStatus.READY_TO_BUILD,
            priority=4,
        )

        request = format_build_request(
            validate_plan(sample_plan), project, "https://api.example.com/api/v1/webhooks/build"
        )

        assert request["techStack"] == {
            "frontend": "React",
            "backend": "FastAPI",
            "database": "PostgreSQL",
        }
        assert [f["priority"] for f in request["features"]] == [3, 1]
        assert request["architecture"] == "monolith"
        assert request["timeline"] == 45
        assert request["webhook_url"].endswith("/webhooks/build")
        assert request["metadata"]["project_id"] == str(project.id)
        assert request["metadata"]["priority"] == 4
        assert request["metadata"]["file_structure"] == [{"path": "src/main.py", "type": "file"}]
