"""FastAPI dependencies shared by the API routers.

Long-lived collaborators are built once in the lifespan (app.main) and
stored on app.state; these accessors hand them to route functions so tests
can swap them by assigning app.state attributes.
"""

from fastapi import Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.services.broadcaster import EventBroadcaster, SubscriptionHub
from app.services.pipeline_stages import PipelineStages
from app.services.rate_limiter import RateLimitDecision, RateLimiter, verify_admin_token
from app.services.state_machine import ProjectStateMachine
from app.utils.logging import get_logger

log = get_logger(__name__)


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_hub(request: Request) -> SubscriptionHub:
    return request.app.state.broadcaster.hub


def get_state_machine(request: Request) -> ProjectStateMachine:
    return request.app.state.state_machine


def get_stages(request: Request) -> PipelineStages:
    return request.app.state.stages


def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
    """Operator-only routes: X-Admin-Token must match ADMIN_TOKEN (403 otherwise)."""
    verify_admin_token(x_admin_token)


def client_ip(request: Request) -> str:
    """Caller address, honouring the first X-Forwarded-For hop behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def run_abuse_detection(
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: RateLimiter,
    ip_address: str | None,
    identifier: str | None,
) -> None:
    """Run abuse detection for a rejected request in its own transaction."""
    async with session_factory() as session, session.begin():
        blocked = await rate_limiter.detect_abuse(session, ip_address, identifier)
    if blocked:
        log.warning("abuse_detection_blocked_ips", ip_addresses=blocked)


def rate_limited_response(decision: RateLimitDecision) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=decision.to_dict(),
        headers={"Retry-After": str(decision.retry_after)},
    )


async def enforce_rate_limit(
    request: Request,
    session: AsyncSession,
    rule_name: str,
) -> RateLimitDecision:
    """Count the request against `rule_name`, keyed by client IP.

    The rate-limit log row is committed and abuse detection runs before the
    rejection is raised; background tasks do not run for raised errors.

    Raises:
        HTTPException: 429 when the request is not allowed.
    """
    ip_address = client_ip(request)
    rate_limiter = get_rate_limiter(request)
    decision = await rate_limiter.check(
        session,
        ip_address,
        rule_name,
        client_ip=ip_address,
        endpoint=request.url.path,
    )
    if decision.allowed:
        return decision

    await session.commit()
    await run_abuse_detection(
        get_session_factory(request), rate_limiter, ip_address, ip_address
    )
    log.info(
        "request_rate_limited",
        rule=rule_name,
        ip_address=ip_address,
        path=request.url.path,
        reason=decision.reason,
    )
    raise rate_limited_response(decision)
