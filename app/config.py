"""Configuration management for the pipeline orchestration core.

This module provides centralized configuration loading from environment variables.
Values that cannot change during the life of a process are cached.

Environment Variables:
    DATABASE_URL: PostgreSQL connection URL (required for production)
    ADMIN_TOKEN: Credential for rate-limit administration (optional, fails closed)
    BUILD_WEBHOOK_SECRET: Shared secret for build-service webhooks
    CONVERSATION_WEBHOOK_SECRET: Shared secret for conversation-provider webhooks
    PUBLIC_BASE_URL: Externally reachable base URL used for build callbacks
    BUILD_SERVICE_URL / BUILD_SERVICE_API_KEY: Build-automation service
    ANALYSIS_SERVICE_URL / ANALYSIS_API_KEY / ANALYSIS_MODEL: Analysis service
    CONVERSATION_API_KEY: Conversation-provider transcript API key
    QUEUE_*: Retry and stall tuning for the task queue
    WORKER_*: Worker identity and polling
    *_TIMEOUT_SECONDS: Deadlines for external stage calls
    RATE_LIMIT_RULES_FILE: Optional YAML file overriding rate-limit rules

Usage:
    from app.config import get_database_url, get_queue_max_retries

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    retries = get_queue_max_retries()  # Default 3
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)


def _get_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer variable and clamp it to [minimum, maximum].

    Invalid values are logged and replaced with the default.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_config_value", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.

    Environment Variable:
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Database URL with asyncpg driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    # Hosted Postgres hands out postgresql:// but we need postgresql+asyncpg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_admin_token() -> str:
    """Get the rate-limit administration token.

    Returns:
        Token string, or "" when unset. An empty token rejects every
        admin request.
    """
    return os.getenv("ADMIN_TOKEN", "")


def get_build_webhook_secret() -> str:
    return os.getenv("BUILD_WEBHOOK_SECRET", "")


def get_conversation_webhook_secret() -> str:
    return os.getenv("CONVERSATION_WEBHOOK_SECRET", "")


def get_public_base_url() -> str:
    """Get the externally reachable base URL of the API process.

    Used to build the callback URL handed to the build service.

    Environment Variable:
        PUBLIC_BASE_URL: e.g. "https://pipeline.example.com" (default: http://localhost:8000)
    """
    return os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")


def get_build_service_url() -> str:
    return os.getenv("BUILD_SERVICE_URL", "https://api.kiro.dev/v1").rstrip("/")


def get_build_service_api_key() -> str | None:
    """Get build-automation API key.

    Returns:
        API key, or None if not set. The build client raises
        ConfigurationError on first use without one.
    """
    return os.getenv("BUILD_SERVICE_API_KEY")


def get_analysis_service_url() -> str:
    return os.getenv("ANALYSIS_SERVICE_URL", "https://api.openai.com/v1").rstrip("/")


def get_analysis_api_key() -> str | None:
    return os.getenv("ANALYSIS_API_KEY")


def get_analysis_model() -> str:
    return os.getenv("ANALYSIS_MODEL", "gpt-4-1106-preview")


def get_conversation_api_key() -> str | None:
    return os.getenv("CONVERSATION_API_KEY")


def get_queue_max_retries() -> int:
    """Get default max_retries for new queued tasks.

    Environment Variable:
        QUEUE_MAX_RETRIES: Retries before a task is terminally failed (default: 3)

    Returns:
        Max retries (minimum 0, maximum 10).
    """
    return _get_int("QUEUE_MAX_RETRIES", 3, 0, 10)


def get_retry_base_seconds() -> int:
    """Get base delay for exponential retry backoff (default: 5 seconds)."""
    return _get_int("QUEUE_RETRY_BASE_SECONDS", 5, 1, 300)


def get_retry_max_delay_seconds() -> int:
    """Get cap for exponential retry backoff (default: 300 seconds)."""
    return _get_int("QUEUE_RETRY_MAX_DELAY_SECONDS", 300, 1, 3600)


def get_stall_timeout_seconds() -> int:
    """Get how long a task may stay in processing before it is requeued.

    Environment Variable:
        QUEUE_STALL_TIMEOUT_SECONDS: Stall threshold (default: 1800 = 30 minutes)

    Returns:
        Stall timeout in seconds (minimum 60, maximum 86400).

    Note:
        Must exceed the longest stage deadline (plan generation, 600s),
        otherwise a slow but healthy task would be claimed twice.
    """
    return _get_int("QUEUE_STALL_TIMEOUT_SECONDS", 1800, 60, 86400)


def get_worker_id() -> str:
    """Get worker identity used as the claimant on queued tasks.

    Environment Variable:
        WORKER_ID: Worker name (default: RAILWAY_SERVICE_NAME, else "worker-local")
    """
    return os.getenv("WORKER_ID") or os.getenv("RAILWAY_SERVICE_NAME", "worker-local")


def get_worker_poll_interval() -> int:
    """Get sleep between empty queue polls (default: 5 seconds, 1-60)."""
    return _get_int("WORKER_POLL_INTERVAL_SECONDS", 5, 1, 60)


def get_transcript_timeout_seconds() -> int:
    return _get_int("TRANSCRIPT_TIMEOUT_SECONDS", 30, 1, 300)


def get_analysis_timeout_seconds() -> int:
    return _get_int("ANALYSIS_TIMEOUT_SECONDS", 300, 10, 1800)


def get_plan_timeout_seconds() -> int:
    return _get_int("PLAN_TIMEOUT_SECONDS", 600, 10, 1800)


def get_build_trigger_timeout_seconds() -> int:
    return _get_int("BUILD_TRIGGER_TIMEOUT_SECONDS", 60, 5, 600)


def get_maintenance_interval() -> int:
    """Get maintenance loop interval in seconds from environment.

    Environment Variable:
        MAINTENANCE_INTERVAL_SECONDS: Sweep interval (default: 60)

    Returns:
        Interval in seconds (minimum 10, maximum 600).
    """
    try:
        interval = int(os.getenv("MAINTENANCE_INTERVAL_SECONDS", "60"))
        return max(10, min(600, interval))
    except ValueError:
        log.warning(
            "invalid_maintenance_interval",
            value=os.getenv("MAINTENANCE_INTERVAL_SECONDS"),
            using_default=60,
        )
        return 60


def get_rate_limit_rules_file() -> str | None:
    """Get path of a YAML file overriding the default rate-limit rules.

    Returns:
        File path, or None to use built-in defaults.
    """
    return os.getenv("RATE_LIMIT_RULES_FILE") or None


# Retention windows for housekeeping (days)
DEFAULT_BROADCAST_RETENTION_DAYS = 7
DEFAULT_NOTIFICATION_RETENTION_DAYS = 30
DEFAULT_BUILD_EVENT_RETENTION_DAYS = 30
DEFAULT_WEBHOOK_RETENTION_DAYS = 7
DEFAULT_RATE_LIMIT_LOG_RETENTION_DAYS = 7


def get_retention_days() -> dict[str, int]:
    """Get retention windows for purged tables.

    Environment Variables:
        BROADCAST_RETENTION_DAYS, NOTIFICATION_RETENTION_DAYS,
        BUILD_EVENT_RETENTION_DAYS, WEBHOOK_RETENTION_DAYS,
        RATE_LIMIT_LOG_RETENTION_DAYS

    Returns:
        Mapping of table name to retention in days (1-365).
    """
    return {
        "broadcast_events": _get_int(
            "BROADCAST_RETENTION_DAYS", DEFAULT_BROADCAST_RETENTION_DAYS, 1, 365
        ),
        "user_notifications": _get_int(
            "NOTIFICATION_RETENTION_DAYS", DEFAULT_NOTIFICATION_RETENTION_DAYS, 1, 365
        ),
        "build_events": _get_int(
            "BUILD_EVENT_RETENTION_DAYS", DEFAULT_BUILD_EVENT_RETENTION_DAYS, 1, 365
        ),
        "webhook_events": _get_int(
            "WEBHOOK_RETENTION_DAYS", DEFAULT_WEBHOOK_RETENTION_DAYS, 1, 365
        ),
        "rate_limit_logs": _get_int(
            "RATE_LIMIT_LOG_RETENTION_DAYS", DEFAULT_RATE_LIMIT_LOG_RETENTION_DAYS, 1, 365
        ),
    }
