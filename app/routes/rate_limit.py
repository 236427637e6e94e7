"""Rate-limit routes.

- POST /api/v1/rate-limit/check - Check (and count) a request for an identifier
- POST /api/v1/rate-limit/block - Block an IP (admin)
- POST /api/v1/rate-limit/unblock - Lift an IP block (admin)
- POST /api/v1/rate-limit/reset - Clear in-memory counters (admin)
- GET /api/v1/rate-limit/stats - Aggregated activity (admin)

Admin routes require the X-Admin-Token header and return 403 otherwise.
"""

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.dependencies import (
    client_ip,
    get_rate_limiter,
    get_session_factory,
    require_admin,
    run_abuse_detection,
)
from app.models import BlockedIP
from app.schemas.rate_limit import (
    BlockIPRequest,
    RateLimitCheckRequest,
    ResetRequest,
    UnblockIPRequest,
)
from app.services.rate_limiter import RateLimiter

router = APIRouter(prefix="/api/v1/rate-limit", tags=["rate-limit"])


def _block_to_dict(block: BlockedIP) -> dict[str, Any]:
    return {
        "ip_address": block.ip_address,
        "reason": block.reason,
        "blocked_until": block.blocked_until.isoformat() if block.blocked_until else None,
        "is_active": block.is_active,
        "created_by": block.created_by,
    }


@router.post("/check")
async def check_rate_limit(
    body: RateLimitCheckRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> JSONResponse:
    """Check a request against a rule.

    Returns:
        200 OK: Allowed, with remaining quota
        429 Too Many Requests: Rejected (IP blocked or limit exceeded);
            abuse detection runs after the response
    """
    ip_address = client_ip(request)
    decision = await rate_limiter.check(
        session,
        body.identifier,
        body.rule,
        body.increment,
        client_ip=ip_address,
        endpoint=body.endpoint,
        user_id=body.user_id,
    )

    if decision.allowed:
        return JSONResponse(status_code=200, content=decision.to_dict())

    await session.commit()
    background_tasks.add_task(
        run_abuse_detection,
        get_session_factory(request),
        rate_limiter,
        ip_address,
        body.identifier,
    )
    return JSONResponse(
        status_code=429,
        content=decision.to_dict(),
        headers={"Retry-After": str(decision.retry_after)},
    )


@router.post("/block", dependencies=[Depends(require_admin)])
async def block_ip(
    body: BlockIPRequest,
    session: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    block = await rate_limiter.block_ip(
        session,
        body.ip_address,
        body.reason,
        duration_hours=body.duration_hours,
        permanent=body.permanent,
    )
    return {"status": "blocked", "block": _block_to_dict(block)}


@router.post("/unblock", dependencies=[Depends(require_admin)])
async def unblock_ip(
    body: UnblockIPRequest,
    session: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    block = await rate_limiter.unblock_ip(session, body.ip_address)
    return {"status": "unblocked", "block": _block_to_dict(block)}


@router.post("/reset", dependencies=[Depends(require_admin)])
async def reset_limits(
    body: ResetRequest,
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    if body.all_entries:
        removed = rate_limiter.reset()
    else:
        removed = rate_limiter.reset(identifier=body.identifier, rule_name=body.rule)
    return {"status": "reset", "entries_removed": removed}


@router.get("/stats", dependencies=[Depends(require_admin)])
async def rate_limit_stats(
    timeframe: str = Query(default="24h"),
    session: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict[str, Any]:
    return await rate_limiter.stats(session, timeframe)
