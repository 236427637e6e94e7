"""Business logic services for the orchestration layer."""

from app.services.broadcaster import EventBroadcaster, SubscriptionHub
from app.services.pipeline_stages import PipelineStages
from app.services.rate_limiter import RateLimiter
from app.services.state_machine import ProjectStateMachine

__all__ = [
    "EventBroadcaster",
    "PipelineStages",
    "ProjectStateMachine",
    "RateLimiter",
    "SubscriptionHub",
]
