"""Rate limiting and abuse detection for pipeline entry points.

Two layers with different guarantees:

In-memory counters (per API process):
    Fixed windows aligned to epoch multiples of the rule's window, keyed by
    (rule, identifier). Counters are owned by one RateLimiter instance
    (app.state.rate_limiter), swept periodically, and lost on restart. With
    N API instances an identifier can be admitted up to N × limit per
    window: an approximate guarantee, accepted for entry-point protection.

Durable state (shared database, exact across instances):
    - blocked_ips: checked before any identifier-level counter
    - rate_limit_logs: every identifier-level check; abuse detection and
      stats read from here

Abuse detection (run after a rejected check, off the request path):
    - ≥10 rejections from one IP within 5 minutes → block IP 30 minutes
      (SUSPICIOUS_ACTIVITY)
    - one identifier rejected from ≥5 distinct IPs within 5 minutes → block
      every IP with ≥3 of those rejections for 60 minutes (DISTRIBUTED_ATTACK)
    - an IP that already has a block in effect is left untouched
    - every new automatic block sends a WARNING operator alert

Administrative operations require the ADMIN_TOKEN credential and change
nothing when it is missing or wrong.
"""

import hmac
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_admin_token
from app.constants import (
    ABUSE_WINDOW_SECONDS,
    BLOCK_REASON_DISTRIBUTED_ATTACK,
    BLOCK_REASON_SUSPICIOUS_ACTIVITY,
    DEFAULT_RATE_LIMIT_RULES,
    DISTRIBUTED_ATTACK_BLOCK_MINUTES,
    DISTRIBUTED_ATTACK_MIN_IPS,
    DISTRIBUTED_ATTACK_MIN_REJECTIONS_PER_IP,
    STATS_TIMEFRAMES,
    SUSPICIOUS_IP_BLOCK_MINUTES,
    SUSPICIOUS_IP_REJECTIONS,
)
from app.exceptions import (
    ConfigurationError,
    InvalidPayloadError,
    NotFoundError,
    UnauthorizedError,
)
from app.models import BlockedIP, RateLimitLog, as_utc
from app.utils.alerts import send_alert
from app.utils.logging import get_logger

log = get_logger(__name__)

IP_BLOCKED = "IP_BLOCKED"
RATE_LIMITED = "RATE_LIMITED"


class RateLimitRule(BaseModel):
    """Limit definition: `requests` per `window_seconds`, then block."""

    name: str
    requests: int = Field(..., gt=0)
    window_seconds: int = Field(..., gt=0)
    block_duration_seconds: int = Field(..., ge=0)


def load_rules(path: str | Path | None = None) -> dict[str, RateLimitRule]:
    """Build the rule table: defaults, overlaid with a YAML file if given.

    YAML format:
        api_conversation:
          requests: 10
          window_seconds: 60
          block_duration_seconds: 300

    Raises:
        ConfigurationError: File missing, unparsable, or invalid.
    """
    raw: dict[str, dict[str, int]] = {
        name: dict(values) for name, values in DEFAULT_RATE_LIMIT_RULES.items()
    }

    if path is not None:
        file_path = Path(path)
        if not file_path.exists():
            raise ConfigurationError(f"Rate limit rules file not found: {file_path}")
        try:
            with file_path.open("r", encoding="utf-8") as f:
                overrides = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid rate limit rules YAML: {e}") from e
        if not isinstance(overrides, dict):
            raise ConfigurationError("Rate limit rules file must contain a mapping")
        for name, values in overrides.items():
            raw[name] = {**raw.get(name, {}), **(values or {})}
        log.info("rate_limit_rules_loaded", file=str(file_path), overridden=sorted(overrides))

    try:
        return {name: RateLimitRule(name=name, **values) for name, values in raw.items()}
    except ValidationError as e:
        raise ConfigurationError(f"Invalid rate limit rule: {e}") from e


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float
    blocked: bool = False
    block_until: float | None = None


@dataclass
class RateLimitDecision:
    """Outcome of check()."""

    allowed: bool
    rule: str
    limit: int
    remaining: int
    reset_time: datetime
    retry_after: int = 0
    blocked: bool = False
    reason: str | None = None
    block_reason: str | None = None
    block_until: datetime | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "rule": self.rule,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "retry_after": self.retry_after,
            "blocked": self.blocked,
            "reason": self.reason,
            "block_reason": self.block_reason,
            "block_until": self.block_until.isoformat() if self.block_until else None,
            "warnings": self.warnings,
        }


def _to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def verify_admin_token(token: str | None, expected: str | None = None) -> None:
    """Constant-time admin credential check.

    Fails closed when no ADMIN_TOKEN is configured.

    Raises:
        UnauthorizedError: Missing, wrong, or unconfigured token.
    """
    secret = get_admin_token() if expected is None else expected
    if not secret:
        log.warning("admin_token_not_configured")
        raise UnauthorizedError("Admin access is not configured")
    if not token or not hmac.compare_digest(token.encode(), secret.encode()):
        log.warning("admin_token_rejected")
        raise UnauthorizedError("Invalid admin token")


class RateLimiter:
    """Per-process rate limiter with a shared durable block list.

    Args:
        rules: Rule table (default: built-in rules).
        clock: Returns current epoch seconds; injectable for tests.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = rules or load_rules()
        self._clock = clock
        self._entries: dict[tuple[str, str], RateLimitEntry] = {}

    def get_rule(self, rule_name: str) -> RateLimitRule:
        rule = self.rules.get(rule_name)
        if rule is None:
            raise InvalidPayloadError(
                f"Unknown rate limit rule: {rule_name}",
                code="INVALID_RULE",
                context={"rule_name": rule_name, "valid": sorted(self.rules)},
            )
        return rule

    def now(self) -> datetime:
        return _to_datetime(self._clock())

    @staticmethod
    def window_reset(now: float, window_seconds: int) -> float:
        """End of the fixed window containing `now`.

        A timestamp exactly on a boundary opens a new window.
        """
        return (math.floor(now / window_seconds) + 1) * window_seconds

    def evaluate(
        self, identifier: str, rule: RateLimitRule, increment: bool = True
    ) -> RateLimitDecision:
        """Apply the in-memory fixed-window counter for one identifier.

        While blocked, nothing is counted, even across window boundaries.
        When the block lapses the identifier starts over with a fresh window.
        """
        now = self._clock()
        key = (rule.name, identifier)
        entry = self._entries.get(key)

        if entry is None:
            entry = RateLimitEntry(count=0, reset_at=self.window_reset(now, rule.window_seconds))
            self._entries[key] = entry

        if entry.blocked:
            if entry.block_until is not None and entry.block_until > now:
                return RateLimitDecision(
                    allowed=False,
                    rule=rule.name,
                    limit=rule.requests,
                    remaining=0,
                    reset_time=_to_datetime(entry.block_until),
                    retry_after=math.ceil(entry.block_until - now),
                    blocked=True,
                    reason=RATE_LIMITED,
                    block_until=_to_datetime(entry.block_until),
                )
            entry.blocked = False
            entry.block_until = None
            entry.count = 0
            entry.reset_at = self.window_reset(now, rule.window_seconds)

        if entry.reset_at <= now:
            entry.count = 0
            entry.reset_at = self.window_reset(now, rule.window_seconds)

        if increment:
            entry.count += 1

        if entry.count > rule.requests:
            # Without a block duration the window itself is the penalty.
            if rule.block_duration_seconds:
                entry.blocked = True
                entry.block_until = now + rule.block_duration_seconds
            log.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                rule=rule.name,
                count=entry.count,
                block_seconds=rule.block_duration_seconds,
            )
            retry_at = entry.block_until if entry.blocked else entry.reset_at
            return RateLimitDecision(
                allowed=False,
                rule=rule.name,
                limit=rule.requests,
                remaining=0,
                reset_time=_to_datetime(retry_at),
                retry_after=max(1, math.ceil(retry_at - now)),
                blocked=entry.blocked,
                reason=RATE_LIMITED,
                block_until=_to_datetime(entry.block_until) if entry.blocked else None,
            )

        return RateLimitDecision(
            allowed=True,
            rule=rule.name,
            limit=rule.requests,
            remaining=max(0, rule.requests - entry.count),
            reset_time=_to_datetime(entry.reset_at),
        )

    async def get_active_ip_block(
        self, session: AsyncSession, ip_address: str
    ) -> BlockedIP | None:
        """Return the block in effect for an IP, deactivating it if it has lapsed."""
        block = await session.scalar(
            select(BlockedIP).where(
                BlockedIP.ip_address == ip_address, BlockedIP.is_active.is_(True)
            )
        )
        if block is None:
            return None

        now = self.now()
        if block.is_in_effect(now):
            return block

        block.is_active = False
        await session.flush()
        log.info("ip_block_expired", ip_address=ip_address)
        return None

    async def check(
        self,
        session: AsyncSession,
        identifier: str,
        rule_name: str,
        increment: bool = True,
        *,
        client_ip: str | None = None,
        endpoint: str | None = None,
        user_id: str | None = None,
    ) -> RateLimitDecision:
        """Check (and by default count) one request.

        Args:
            session: Active database session (caller commits).
            identifier: Subject key (user id, API key, IP).
            rule_name: Rule to apply.
            increment: False to peek without counting.
            client_ip: Caller IP, checked against the durable block list.
            endpoint: Logged for stats.
            user_id: Logged for stats.

        Returns:
            RateLimitDecision. Rejections are outcomes, not exceptions.

        Raises:
            InvalidPayloadError: Unknown rule.
        """
        rule = self.get_rule(rule_name)

        if client_ip:
            block = await self.get_active_ip_block(session, client_ip)
            if block is not None:
                block_until = as_utc(block.blocked_until)
                now = self.now()
                log.info("request_rejected_ip_blocked", ip_address=client_ip, reason=block.reason)
                return RateLimitDecision(
                    allowed=False,
                    rule=rule.name,
                    limit=rule.requests,
                    remaining=0,
                    reset_time=block_until or now,
                    retry_after=(
                        math.ceil((block_until - now).total_seconds()) if block_until else 0
                    ),
                    blocked=True,
                    reason=IP_BLOCKED,
                    block_reason=block.reason,
                    block_until=block_until,
                )

        decision = self.evaluate(identifier, rule, increment)
        entry = self._entries.get((rule.name, identifier))

        # Savepoint: a failed log insert must not undo the caller's other writes
        try:
            async with session.begin_nested():
                session.add(
                    RateLimitLog(
                        identifier=identifier,
                        rule_name=rule.name,
                        client_ip=client_ip,
                        endpoint=endpoint,
                        user_id=user_id,
                        allowed=decision.allowed,
                        request_count=entry.count if entry else 0,
                        created_at=self.now(),
                    )
                )
        except SQLAlchemyError as e:
            log.warning("rate_limit_log_failed", identifier=identifier, error=str(e))
            decision.warnings.append(f"Failed to log rate limit check: {e}")

        return decision

    async def _block_if_not_blocked(
        self, session: AsyncSession, ip_address: str, reason: str, minutes: int
    ) -> bool:
        """Create or reactivate an automatic block. No-op if a block is in effect."""
        now = self.now()
        existing = await session.scalar(
            select(BlockedIP).where(BlockedIP.ip_address == ip_address)
        )
        if existing is not None and existing.is_in_effect(now):
            log.debug("ip_already_blocked", ip_address=ip_address, reason=existing.reason)
            return False

        blocked_until = now + timedelta(minutes=minutes)
        if existing is None:
            session.add(
                BlockedIP(
                    ip_address=ip_address,
                    reason=reason,
                    blocked_until=blocked_until,
                    is_active=True,
                    created_by="system",
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            existing.reason = reason
            existing.blocked_until = blocked_until
            existing.is_active = True
            existing.created_by = "system"
        await session.flush()

        log.warning(
            "ip_auto_blocked",
            ip_address=ip_address,
            reason=reason,
            blocked_until=blocked_until.isoformat(),
        )
        await send_alert(
            level="WARNING",
            message=f"IP {ip_address} blocked automatically ({reason})",
            details={
                "ip_address": ip_address,
                "reason": reason,
                "blocked_until": blocked_until.isoformat(),
                "duration_minutes": minutes,
            },
        )
        return True

    async def detect_abuse(
        self,
        session: AsyncSession,
        client_ip: str | None,
        identifier: str | None = None,
    ) -> list[str]:
        """Look for abuse patterns in recent rejections and block offenders.

        Args:
            session: Active database session (caller commits).
            client_ip: IP of the rejected request.
            identifier: Identifier of the rejected request.

        Returns:
            IPs newly blocked by this call.
        """
        since = self.now() - timedelta(seconds=ABUSE_WINDOW_SECONDS)
        newly_blocked: list[str] = []

        if client_ip:
            rejections = await session.scalar(
                select(func.count())
                .select_from(RateLimitLog)
                .where(
                    RateLimitLog.client_ip == client_ip,
                    RateLimitLog.allowed.is_(False),
                    RateLimitLog.created_at >= since,
                )
            )
            if (rejections or 0) >= SUSPICIOUS_IP_REJECTIONS:
                if await self._block_if_not_blocked(
                    session,
                    client_ip,
                    BLOCK_REASON_SUSPICIOUS_ACTIVITY,
                    SUSPICIOUS_IP_BLOCK_MINUTES,
                ):
                    newly_blocked.append(client_ip)

        if identifier:
            rows = (
                await session.execute(
                    select(RateLimitLog.client_ip, func.count())
                    .where(
                        RateLimitLog.identifier == identifier,
                        RateLimitLog.allowed.is_(False),
                        RateLimitLog.created_at >= since,
                        RateLimitLog.client_ip.is_not(None),
                    )
                    .group_by(RateLimitLog.client_ip)
                )
            ).all()

            if len(rows) >= DISTRIBUTED_ATTACK_MIN_IPS:
                log.warning(
                    "distributed_attack_detected",
                    identifier=identifier,
                    distinct_ips=len(rows),
                )
                for ip_address, count in rows:
                    if count < DISTRIBUTED_ATTACK_MIN_REJECTIONS_PER_IP:
                        continue
                    if ip_address in newly_blocked:
                        continue
                    if await self._block_if_not_blocked(
                        session,
                        ip_address,
                        BLOCK_REASON_DISTRIBUTED_ATTACK,
                        DISTRIBUTED_ATTACK_BLOCK_MINUTES,
                    ):
                        newly_blocked.append(ip_address)

        return newly_blocked

    def reset(self, identifier: str | None = None, rule_name: str | None = None) -> int:
        """Drop in-memory counters matching identifier and/or rule (all if neither).

        Returns:
            Number of entries removed.
        """
        keys = [
            key
            for key in self._entries
            if (rule_name is None or key[0] == rule_name)
            and (identifier is None or key[1] == identifier)
        ]
        for key in keys:
            del self._entries[key]
        log.info("rate_limits_reset", identifier=identifier, rule=rule_name, removed=len(keys))
        return len(keys)

    async def block_ip(
        self,
        session: AsyncSession,
        ip_address: str,
        reason: str,
        duration_hours: float = 24,
        permanent: bool = False,
    ) -> BlockedIP:
        """Operator block (upsert). Overrides any existing block."""
        if duration_hours <= 0 and not permanent:
            raise InvalidPayloadError(
                "duration_hours must be positive", context={"duration_hours": duration_hours}
            )

        now = self.now()
        blocked_until = None if permanent else now + timedelta(hours=duration_hours)
        block = await session.scalar(select(BlockedIP).where(BlockedIP.ip_address == ip_address))
        if block is None:
            block = BlockedIP(ip_address=ip_address, created_at=now)
            session.add(block)
        block.reason = reason
        block.blocked_until = blocked_until
        block.is_active = True
        block.created_by = "admin"
        block.updated_at = now
        await session.flush()

        log.warning(
            "ip_blocked_by_admin",
            ip_address=ip_address,
            reason=reason,
            permanent=permanent,
            blocked_until=blocked_until.isoformat() if blocked_until else None,
        )
        return block

    async def unblock_ip(self, session: AsyncSession, ip_address: str) -> BlockedIP:
        """Deactivate a block.

        Raises:
            NotFoundError: No active block for the IP.
        """
        block = await session.scalar(
            select(BlockedIP).where(
                BlockedIP.ip_address == ip_address, BlockedIP.is_active.is_(True)
            )
        )
        if block is None:
            raise NotFoundError(
                f"No active block for {ip_address}", context={"ip_address": ip_address}
            )

        block.is_active = False
        block.updated_at = self.now()
        await session.flush()
        log.info("ip_unblocked", ip_address=ip_address)
        return block

    async def stats(self, session: AsyncSession, timeframe: str = "24h") -> dict[str, Any]:
        """Aggregate rate-limit activity over a timeframe (1h, 6h, 24h, 7d)."""
        seconds = STATS_TIMEFRAMES.get(timeframe)
        if seconds is None:
            raise InvalidPayloadError(
                f"Unknown timeframe: {timeframe}",
                context={"timeframe": timeframe, "valid": sorted(STATS_TIMEFRAMES)},
            )
        now = self.now()
        since = now - timedelta(seconds=seconds)
        in_window = RateLimitLog.created_at >= since

        total = (
            await session.scalar(select(func.count()).select_from(RateLimitLog).where(in_window))
            or 0
        )
        rejected = (
            await session.scalar(
                select(func.count())
                .select_from(RateLimitLog)
                .where(in_window, RateLimitLog.allowed.is_(False))
            )
            or 0
        )

        top_identifiers = (
            await session.execute(
                select(RateLimitLog.identifier, func.count().label("hits"))
                .where(in_window)
                .group_by(RateLimitLog.identifier)
                .order_by(func.count().desc())
                .limit(10)
            )
        ).all()

        top_blocked_ips = (
            await session.execute(
                select(RateLimitLog.client_ip, func.count().label("rejections"))
                .where(
                    in_window,
                    RateLimitLog.allowed.is_(False),
                    RateLimitLog.client_ip.is_not(None),
                )
                .group_by(RateLimitLog.client_ip)
                .order_by(func.count().desc())
                .limit(10)
            )
        ).all()

        per_rule = (
            await session.execute(
                select(RateLimitLog.rule_name, RateLimitLog.allowed, func.count())
                .where(in_window)
                .group_by(RateLimitLog.rule_name, RateLimitLog.allowed)
            )
        ).all()
        rules: dict[str, dict[str, int]] = {}
        for rule_name, allowed, count in per_rule:
            bucket = rules.setdefault(rule_name, {"allowed": 0, "rejected": 0})
            bucket["allowed" if allowed else "rejected"] += count

        active_blocks = (
            await session.scalar(
                select(func.count())
                .select_from(BlockedIP)
                .where(
                    BlockedIP.is_active.is_(True),
                    or_(BlockedIP.blocked_until.is_(None), BlockedIP.blocked_until > now),
                )
            )
            or 0
        )

        clock_now = self._clock()
        return {
            "timeframe": timeframe,
            "total_requests": total,
            "blocked_requests": rejected,
            "block_rate": round(rejected / total * 100, 2) if total else 0.0,
            "top_identifiers": [{"identifier": i, "requests": n} for i, n in top_identifiers],
            "top_blocked_ips": [{"ip_address": ip, "rejections": n} for ip, n in top_blocked_ips],
            "rules": rules,
            "active_ip_blocks": active_blocks,
            "memory_entries": len(self._entries),
            "memory_blocked_entries": sum(
                1
                for entry in self._entries.values()
                if entry.blocked and entry.block_until is not None and entry.block_until > clock_now
            ),
        }

    async def sweep(self, session: AsyncSession | None = None) -> dict[str, int]:
        """Drop expired counters and deactivate lapsed IP blocks.

        Returns:
            {"entries_removed": n, "ip_blocks_expired": m}
        """
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.reset_at <= now and (not entry.blocked or (entry.block_until or 0) <= now)
        ]
        for key in expired:
            del self._entries[key]

        ip_blocks_expired = 0
        if session is not None:
            result = await session.execute(
                update(BlockedIP)
                .where(
                    and_(
                        BlockedIP.is_active.is_(True),
                        BlockedIP.blocked_until.is_not(None),
                        BlockedIP.blocked_until <= _to_datetime(now),
                    )
                )
                .values(is_active=False, updated_at=_to_datetime(now))
                .execution_options(synchronize_session=False)
            )
            ip_blocks_expired = result.rowcount or 0

        if expired or ip_blocks_expired:
            log.info(
                "rate_limit_sweep_completed",
                entries_removed=len(expired),
                ip_blocks_expired=ip_blocks_expired,
            )
        return {"entries_removed": len(expired), "ip_blocks_expired": ip_blocks_expired}
