"""Pydantic schemas for validation and serialization."""

from app.schemas.broadcast import BroadcastRequest
from app.schemas.pipeline import (
    AnalyzeRequest,
    AnalyzeResponse,
    CancelRequest,
    CancelResponse,
    GeneratePlanRequest,
)
from app.schemas.plan import ConversationAnalysis, PlanSummary, ProjectPlan
from app.schemas.rate_limit import (
    BlockIPRequest,
    RateLimitCheckRequest,
    ResetRequest,
    UnblockIPRequest,
)
from app.schemas.webhook import BuildWebhookPayload, ConversationWebhookPayload

__all__ = [
    "AnalyzeRequest",
    "AnalyzeResponse",
    "BlockIPRequest",
    "BroadcastRequest",
    "BuildWebhookPayload",
    "CancelRequest",
    "CancelResponse",
    "ConversationAnalysis",
    "ConversationWebhookPayload",
    "GeneratePlanRequest",
    "PlanSummary",
    "ProjectPlan",
    "RateLimitCheckRequest",
    "ResetRequest",
    "UnblockIPRequest",
]
