"""Operator alerts via Discord webhook.

Raised for conditions a human should look at: a pipeline task that failed
permanently, a project that ran out of retries, an IP auto-blocked for
abuse. Configured with DISCORD_WEBHOOK_URL; without it alerts are only
logged.

Delivery is best effort: a failed alert is logged and never interrupts the
caller.
"""

import os
from typing import Any

import httpx

from app.utils.logging import get_logger

log = get_logger(__name__)

DISCORD_MESSAGE_LIMIT = 2000
DISCORD_FIELD_LIMIT = 1024

ALERT_COLORS = {
    "CRITICAL": 0xFF0000,
    "WARNING": 0xFFA500,
    "INFO": 0x0000FF,
}


def build_alert_payload(
    level: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Discord webhook body for one alert (message truncated to Discord limits)."""
    text = message[:DISCORD_MESSAGE_LIMIT]
    return {
        "content": f"**{level}**: {text}",
        "embeds": [
            {
                "title": f"{level} Alert",
                "description": text,
                "fields": [
                    {"name": key, "value": str(value)[:DISCORD_FIELD_LIMIT], "inline": True}
                    for key, value in (details or {}).items()
                ],
                "color": ALERT_COLORS.get(level, 0x808080),
            }
        ],
    }


async def send_alert(level: str, message: str, details: dict[str, Any] | None = None) -> bool:
    """Send an alert to the operator channel.

    Args:
        level: "CRITICAL", "WARNING" or "INFO".
        message: Alert text.
        details: Structured fields shown alongside the message.

    Returns:
        True if Discord accepted the alert.

    Example:
        >>> await send_alert(
        ...     "CRITICAL",
        ...     "Pipeline task failed permanently",
        ...     {"task_type": "trigger_build", "project_id": "..."},
        ... )
    """
    webhook_url = os.getenv("DISCORD_WEBHOOK_URL")
    if not webhook_url:
        log.warning("alert_not_sent_no_webhook", level=level, message=message[:100])
        return False

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                webhook_url, json=build_alert_payload(level, message, details), timeout=5.0
            )
            response.raise_for_status()
    except httpx.TimeoutException:
        log.error("alert_webhook_timeout", level=level)
        return False
    except httpx.HTTPStatusError as e:
        log.error(
            "alert_webhook_http_error",
            status_code=e.response.status_code,
            response=e.response.text[:500],
        )
        return False
    except httpx.HTTPError as e:
        log.error("alert_webhook_failed", error=str(e))
        return False

    log.info("alert_sent", level=level, message=message[:100])
    return True
