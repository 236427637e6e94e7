"""Shared exceptions for the pipeline orchestration core.

This module contains exception classes used across services, routes and
workers so that error classification (retryable or not, HTTP status, reason
code) lives in one place.

Every pipeline exception carries:
    - code: Stable reason code returned to API callers
    - context: Structured details for logs (never returned to callers)
    - retryable: Whether the task queue should retry the failed task
    - status_code: HTTP status used by the API exception handler
"""

import enum
from typing import Any


class PipelineError(Exception):
    """Base class for all orchestration errors.

    Attributes:
        message: Human-readable error message (safe to return to callers).
        code: Reason code, e.g. "VALIDATION_ERROR".
        context: Extra structured details for logging.
        retryable: True if a task failing with this error should be retried.
    """

    code = "PIPELINE_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or {}
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Raised when required configuration is missing.

    Indicates the process cannot talk to an external collaborator (no API
    key, no service URL) or cannot verify a caller (no admin token).
    """

    code = "CONFIGURATION_ERROR"


class InvalidPayloadError(PipelineError):
    """Malformed request or task payload. Rejected immediately, never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidTaskTypeError(InvalidPayloadError):
    """Raised when enqueueing or dispatching an unrecognized task type."""

    code = "INVALID_TASK_TYPE"


class NotFoundError(PipelineError):
    code = "NOT_FOUND"
    status_code = 404


class UnauthorizedError(PipelineError):
    """Raised when an admin-gated operation is called without a valid credential."""

    code = "UNAUTHORIZED"
    status_code = 403


class ProjectCancelledError(PipelineError):
    """Raised by a stage handler that finds its project cancelled.

    Checked before each side-effecting external call. The worker marks the
    task cancelled rather than failed.
    """

    code = "PROJECT_CANCELLED"
    status_code = 409


class AIAnalysisError(PipelineError):
    """Analysis or plan-generation service failed or returned an unusable result."""

    code = "AI_ANALYSIS_ERROR"
    status_code = 422
    retryable = True


class ExternalServiceError(PipelineError):
    """Non-2xx response, transport failure, or malformed response from a collaborator.

    Retryable when the upstream status is 5xx, 408 or 429, or when no
    response was received at all (status_code None).
    """

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: int | None = None,
        *,
        context: dict[str, Any] | None = None,
    ):
        self.upstream_status = upstream_status
        retryable = (
            upstream_status is None
            or upstream_status >= 500
            or upstream_status in (408, 429)
        )
        super().__init__(message, context=context, retryable=retryable)


class BuildServiceError(ExternalServiceError):
    code = "BUILD_SERVICE_ERROR"


class ConversationProviderError(ExternalServiceError):
    code = "CONVERSATION_PROVIDER_ERROR"


class InvalidStateTransitionError(PipelineError):
    """Raised when attempting a transition outside a state machine's graph.

    Used for both Project.status (pipeline stages) and QueuedTask.status
    (queue lifecycle). Only edges listed in the model's VALID_TRANSITIONS are
    allowed.

    Attributes:
        message: Human-readable error message describing the invalid transition.
        from_status: The current status before the attempted transition.
        to_status: The status that was attempted but is not valid.

    Example:
        >>> project.status = ProjectStatus.ANALYZING
        >>> project.status = ProjectStatus.BUILDING  # skips planning
        InvalidStateTransitionError: Invalid transition: analyzing → building
    """

    code = "STATE_CONFLICT"
    status_code = 409

    def __init__(self, message: str, from_status: enum.Enum, to_status: enum.Enum):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            message,
            context={"from_status": from_status.value, "to_status": to_status.value},
        )

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


# Substrings that mark a free-text failure as transient
RETRYABLE_ERROR_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnreset",
    "econnrefused",
    "rate limit",
    "temporarily",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "internal server error",
)

RETRYABLE_STATUS_MARKERS = ("408", "429", "499", "500", "502", "503", "504")


def is_retryable_failure(error: BaseException | str) -> bool:
    """Classify a failure as transient (worth retrying) or permanent.

    Typed pipeline errors answer for themselves. Anything else is matched
    against known transient patterns and HTTP status markers.

    Args:
        error: Exception instance or captured error text.

    Returns:
        True if the failure looks transient.
    """
    if isinstance(error, PipelineError):
        return error.retryable
    if isinstance(error, TimeoutError):
        return True

    text = str(error).lower()
    if any(pattern in text for pattern in RETRYABLE_ERROR_PATTERNS):
        return True
    return any(marker in text for marker in RETRYABLE_STATUS_MARKERS)
