"""Project-wide constants and mapping tables.

This module contains the default rate-limit rules, the build-service event
vocabulary, and the scoring tables used while analysing conversations and
plans.
"""

# Rate-limit rules: name → (requests allowed per window, window seconds, block seconds)
DEFAULT_RATE_LIMIT_RULES: dict[str, dict[str, int]] = {
    # API endpoint limits
    "api_general": {"requests": 100, "window_seconds": 60, "block_duration_seconds": 300},
    "api_auth": {"requests": 10, "window_seconds": 60, "block_duration_seconds": 900},
    "api_conversation": {"requests": 5, "window_seconds": 60, "block_duration_seconds": 300},
    "api_build": {"requests": 3, "window_seconds": 300, "block_duration_seconds": 600},
    # Per-user limits
    "user_projects": {"requests": 10, "window_seconds": 3600, "block_duration_seconds": 1800},
    "user_api_calls": {"requests": 1000, "window_seconds": 3600, "block_duration_seconds": 3600},
    # Per-IP limits
    "ip_requests": {"requests": 200, "window_seconds": 60, "block_duration_seconds": 600},
    "ip_auth_attempts": {"requests": 20, "window_seconds": 300, "block_duration_seconds": 1800},
}

# Abuse detection thresholds
ABUSE_WINDOW_SECONDS = 5 * 60
SUSPICIOUS_IP_REJECTIONS = 10
SUSPICIOUS_IP_BLOCK_MINUTES = 30
DISTRIBUTED_ATTACK_MIN_IPS = 5
DISTRIBUTED_ATTACK_MIN_REJECTIONS_PER_IP = 3
DISTRIBUTED_ATTACK_BLOCK_MINUTES = 60

BLOCK_REASON_SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
BLOCK_REASON_DISTRIBUTED_ATTACK = "DISTRIBUTED_ATTACK"

STATS_TIMEFRAMES: dict[str, int] = {
    "1h": 3600,
    "6h": 6 * 3600,
    "24h": 24 * 3600,
    "7d": 7 * 24 * 3600,
}

# Build-service webhook event_type → internal build event name
BUILD_EVENT_TYPE_MAP: dict[str, str] = {
    "build.started": "build_started",
    "build.progress": "build_progress",
    "build.completed": "build_completed",
    "build.failed": "build_failed",
    "build.cancelled": "build_cancelled",
    "file.generated": "file_generated",
    "log.entry": "log_entry",
}
DEFAULT_BUILD_EVENT = "log_entry"
TERMINAL_BUILD_EVENTS = frozenset({"build_completed", "build_failed", "build_cancelled"})

# Replay protection for signed webhooks
WEBHOOK_MAX_AGE_SECONDS = 5 * 60
WEBHOOK_MAX_FUTURE_SKEW_SECONDS = 60

# Build metadata bookkeeping
MAX_TRACKED_FILES = 50
MAX_TRACKED_LOG_ENTRIES = 20
RECENT_BUILD_EVENTS_LIMIT = 20
TRACKED_LOG_LEVELS = frozenset({"error", "warn", "warning"})

# Project metadata describing one build; cleared when a failed project is retried
BUILD_TRACKING_METADATA_KEYS = frozenset(
    {
        "build_triggered_at",
        "build_status",
        "estimated_completion",
        "build_started_at",
        "latest_progress",
        "current_step",
        "last_progress_update",
        "build_completed_at",
        "final_progress",
        "build_artifacts",
        "deployment_url",
        "repository_url",
        "build_duration_ms",
        "build_failed_at",
        "failure_reason",
        "failure_step",
        "failure_code",
        "build_logs_url",
        "build_cancelled_at",
        "cancellation_reason",
        "cancelled_by",
        "generated_files",
        "last_file_generated",
        "recent_logs",
        "last_webhook_event",
        "last_webhook_timestamp",
        "last_sequence_number",
    }
)

# Conversation-provider events that start (or restart) the pipeline
CONVERSATION_PIPELINE_EVENTS = frozenset({"conversation_ended", "transcript_ready"})
CONVERSATION_ACKNOWLEDGED_EVENTS = frozenset(
    {"conversation_started", "participant_joined", "participant_left", "recording_ready"}
)
MAX_PROJECT_RETRIES = 2

# Queue priorities (1-5, higher = sooner)
CONVERSATION_ANALYSIS_PRIORITY = 5
WEBHOOK_TASK_PRIORITY = 4
NOTIFICATION_TASK_PRIORITY = 1
DEFAULT_PROJECT_PRIORITY = 3

# Priority scoring from conversation analysis
COMPLEXITY_PRIORITY_BONUS: dict[str, int] = {"simple": 1, "medium": 2, "complex": 3}
URGENT_TIMELINE_KEYWORDS = ("urgent", "asap", "immediately")
FAST_TIMELINE_KEYWORDS = ("week", "fast")
HIGH_VALUE_FEATURE_KEYWORDS = ("payment", "commerce", "revenue", "business", "enterprise")

# Plan complexity weights per technology (unlisted technologies weigh 1)
TECH_COMPLEXITY: dict[str, int] = {
    "React": 2,
    "Next.js": 3,
    "Vue": 2,
    "Angular": 4,
    "Node.js": 2,
    "Express": 1,
    "FastAPI": 2,
    "Django": 3,
    "PostgreSQL": 2,
    "MongoDB": 2,
    "Redis": 1,
}
MAX_COMPLEXITY_SCORE = 100

# Feature priority labels sent to the build service
FEATURE_PRIORITY_SCORES: dict[str, int] = {"high": 3, "medium": 2, "low": 1}
