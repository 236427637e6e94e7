"""Build-automation service client.

Hands a validated project plan to the build service, which then reports
progress back through signed webhooks (POST /api/v1/webhooks/build).

Usage:
    client = BuildServiceClient()
    result = await client.trigger_build(payload)
    # {"build_id": "...", "project_id": "...", "status": "initiated"}
"""

from typing import Any

from app.clients.base import ServiceClient
from app.config import get_build_service_api_key, get_build_service_url
from app.exceptions import BuildServiceError, ConfigurationError, PipelineError
from app.utils.logging import get_logger

log = get_logger(__name__)

USER_AGENT = "conversation-pipeline/1.0"


class BuildServiceClient(ServiceClient):
    """Client for POST {BUILD_SERVICE_URL}/projects (Bearer auth)."""

    service_name = "Build service"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("timeout", 60.0)
        kwargs.setdefault("max_rate", 2)
        super().__init__(base_url or get_build_service_url(), **kwargs)
        self.api_key = api_key if api_key is not None else get_build_service_api_key()

    def _get_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("BUILD_SERVICE_API_KEY is not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    def _error(self, message: str, upstream_status: int | None = None) -> PipelineError:
        return BuildServiceError(message, upstream_status)

    async def trigger_build(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Start a build.

        Args:
            payload: Build request (see app.services.planning.format_build_request).

        Returns:
            {"build_id", "project_id", "status", "estimated_completion"}

        Raises:
            BuildServiceError: Error response, transport failure, or a
                response without build_id/project_id (502).
        """
        body = await self.request("POST", "/projects", json=payload)

        if not isinstance(body, dict) or not body.get("build_id") or not body.get("project_id"):
            raise BuildServiceError(
                "Invalid response from build service: missing build_id or project_id",
                502,
                context={"response": body if isinstance(body, dict) else str(body)[:500]},
            )

        result = {
            "build_id": str(body["build_id"]),
            "project_id": str(body["project_id"]),
            "status": body.get("status") or "initiated",
            "estimated_completion": body.get("estimated_completion"),
        }
        log.info(
            "build_triggered",
            build_id=result["build_id"],
            build_project_id=result["project_id"],
            status=result["status"],
        )
        return result
