"""Analysis service client (OpenAI-compatible chat completions).

Two calls drive the first two pipeline stages:
- analyze_conversation(): transcript → ConversationAnalysis JSON
- generate_plan(): analysis → ProjectPlan JSON

Both request JSON-mode output. Any failure (transport, error response,
unparsable content) surfaces as AIAnalysisError; schema validation of the
returned document happens in app.services.planning.

Usage:
    client = AnalysisClient()
    analysis = await client.analyze_conversation(transcript, summary)
"""

import json
from typing import Any

from app.clients.base import ServiceClient
from app.config import (
    get_analysis_api_key,
    get_analysis_model,
    get_analysis_service_url,
)
from app.exceptions import AIAnalysisError, ConfigurationError, PipelineError
from app.utils.logging import get_logger

log = get_logger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert business analyst and technical architect. Analyze "
    "conversations to extract project requirements and technical "
    "specifications. Always respond with valid JSON."
)

PLAN_SYSTEM_PROMPT = (
    "You are an expert software architect and project manager. Generate "
    "comprehensive, actionable project plans that can be consumed by "
    "development APIs. Always respond with valid JSON."
)

ANALYSIS_PROMPT_TEMPLATE = """Analyze this conversation transcript and extract structured
project information:

TRANSCRIPT:
{transcript}

{summary_section}

Return a JSON object with this structure:
{{
  "projectName": "Clear, concise project name",
  "description": "Detailed project description (2-3 sentences)",
  "summary": "Executive summary of the conversation",
  "requirements": ["Specific functional requirements"],
  "features": ["Key features to implement"],
  "preferences": {{
    "techStack": ["Preferred technologies mentioned"],
    "timeline": "Timeline mentioned or estimated",
    "budget": "Budget constraints if mentioned",
    "complexity": "simple|medium|complex"
  }},
  "extractedEntities": {{
    "technologies": ["All technologies mentioned"],
    "integrations": ["Third-party services to integrate"],
    "platforms": ["Target platforms (web, mobile, etc.)"]
  }}
}}

Be specific and actionable. If information is unclear, make reasonable
assumptions based on context."""

PLAN_PROMPT_TEMPLATE = """Generate a comprehensive project plan based on this analysis:

PROJECT ANALYSIS:
{analysis}

{preferences_section}

Return a JSON object with this structure:
{{
  "name": "Project name",
  "description": "Project description",
  "techStack": {{
    "frontend": ["Primary frontend technologies"],
    "backend": ["Backend technologies and frameworks"],
    "database": "Database technology",
    "deployment": "Deployment platform"
  }},
  "features": [
    {{
      "id": "unique-feature-id",
      "name": "Feature name",
      "description": "Detailed feature description",
      "priority": "high|medium|low",
      "complexity": 1,
      "dependencies": ["other-feature-ids"],
      "acceptanceCriteria": ["Specific acceptance criteria"]
    }}
  ],
  "architecture": {{"type": "monolith|microservices|serverless", "components": []}},
  "timeline": {{
    "estimated_hours": 120,
    "phases": [
      {{"name": "Phase name", "description": "Phase description",
        "estimated_hours": 40, "tasks": ["Specific tasks"], "dependencies": []}}
    ]
  }},
  "fileStructure": [],
  "dependencies": [{{"name": "package", "version": "^1.0.0", "type": "runtime"}}],
  "buildConfig": {{"projectType": "web-application", "buildSettings": {{}}}}
}}

Choose modern, production-ready technologies, keep features small and
testable, order dependencies correctly and give realistic estimates."""


class AnalysisClient(ServiceClient):
    """Chat-completions client for conversation analysis and plan generation."""

    service_name = "Analysis service"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        **kwargs: Any,
    ) -> None:
        # Stage deadlines are enforced by the caller; this is the transport ceiling
        kwargs.setdefault("timeout", 300.0)
        kwargs.setdefault("max_rate", 3)
        super().__init__(base_url or get_analysis_service_url(), **kwargs)
        self.api_key = api_key if api_key is not None else get_analysis_api_key()
        self.model = model or get_analysis_model()

    def _get_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("ANALYSIS_API_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _error(self, message: str, upstream_status: int | None = None) -> PipelineError:
        # Bad credentials or a malformed request will not fix themselves
        retryable = upstream_status not in (400, 401, 403, 404)
        return AIAnalysisError(
            message,
            context={"upstream_status": upstream_status},
            retryable=retryable,
        )

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> dict[str, Any]:
        """Run one JSON-mode chat completion and decode the message content.

        Raises:
            AIAnalysisError: Request failed or content is not a JSON object.
        """
        body = await self.request(
            "POST",
            "/chat/completions",
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "response_format": {"type": "json_object"},
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

        try:
            content = body["choices"][0]["message"]["content"]
            document = json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
            raise AIAnalysisError(f"Unusable analysis service response: {e}") from e

        if not isinstance(document, dict):
            raise AIAnalysisError("Analysis service returned a non-object JSON document")
        return document

    async def analyze_conversation(
        self, transcript: str, summary: str | None = None
    ) -> dict[str, Any]:
        """Extract requirements from a conversation transcript."""
        prompt = ANALYSIS_PROMPT_TEMPLATE.format(
            transcript=transcript,
            summary_section=f"SUMMARY: {summary}" if summary else "",
        )
        log.info("conversation_analysis_requested", characters=len(transcript), model=self.model)
        return await self.complete_json(ANALYSIS_SYSTEM_PROMPT, prompt, temperature=0.3)

    async def generate_plan(
        self,
        analysis: dict[str, Any],
        preferences: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Turn a stored analysis into a build-ready plan document."""
        prompt = PLAN_PROMPT_TEMPLATE.format(
            analysis=json.dumps(analysis, indent=2, default=str),
            preferences_section=(
                f"ADDITIONAL PREFERENCES:\n{json.dumps(preferences, indent=2)}"
                if preferences
                else ""
            ),
        )
        log.info("plan_generation_requested", model=self.model)
        return await self.complete_json(
            PLAN_SYSTEM_PROMPT, prompt, temperature=0.2, max_tokens=4000
        )
