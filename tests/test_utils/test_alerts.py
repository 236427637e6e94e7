"""Tests for Discord webhook operator alerts.

Tests cover:
    - build_alert_payload: levels, colors, truncation to Discord limits
    - send_alert: Discord webhook integration
    - Graceful degradation (log on failure, never raise)
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.utils.alerts import (
    ALERT_COLORS,
    DISCORD_FIELD_LIMIT,
    DISCORD_MESSAGE_LIMIT,
    build_alert_payload,
    send_alert,
)

WEBHOOK_URL = "https://discord.com/api/webhooks/test/webhook"


@pytest.fixture
def mock_webhook_url(monkeypatch):
    """Set DISCORD_WEBHOOK_URL environment variable."""
    monkeypatch.setenv("DISCORD_WEBHOOK_URL", WEBHOOK_URL)
    return WEBHOOK_URL


@pytest.fixture
def no_webhook_url(monkeypatch):
    """Remove DISCORD_WEBHOOK_URL environment variable."""
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)


class TestBuildAlertPayload:
    """Test build_alert_payload function."""

    def test_critical_payload_with_details(self):
        """Level, color and detail fields end up in the embed."""
        payload = build_alert_payload(
            "CRITICAL",
            "Pipeline task failed permanently",
            {"task_type": "trigger_build", "retry_count": 3},
        )

        embed = payload["embeds"][0]
        assert payload["content"] == "**CRITICAL**: Pipeline task failed permanently"
        assert embed["title"] == "CRITICAL Alert"
        assert embed["color"] == ALERT_COLORS["CRITICAL"]
        assert embed["fields"] == [
            {"name": "task_type", "value": "trigger_build", "inline": True},
            {"name": "retry_count", "value": "3", "inline": True},
        ]

    def test_long_message_and_fields_truncated(self):
        """Message and field values are cut to Discord limits."""
        payload = build_alert_payload("WARNING", "x" * 5000, {"error": "e" * 3000})

        embed = payload["embeds"][0]
        assert len(embed["description"]) == DISCORD_MESSAGE_LIMIT
        assert len(embed["fields"][0]["value"]) == DISCORD_FIELD_LIMIT

    def test_unknown_level_gray(self):
        """Unknown levels fall back to gray with no fields."""
        payload = build_alert_payload("DEBUG", "hello")

        assert payload["embeds"][0]["color"] == 0x808080
        assert payload["embeds"][0]["fields"] == []


class TestSendAlert:
    """Test send_alert function."""

    @pytest.mark.asyncio
    async def test_send_critical_alert(self, mock_webhook_url, mocker):
        """Scenario 1: Send CRITICAL alert with details."""
        mock_post = mocker.patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            return_value=MagicMock(status_code=204),
        )

        sent = await send_alert(
            "CRITICAL",
            "Project failed after retries",
            {"project_id": "p-1"},
        )

        assert sent is True
        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == mock_webhook_url
        assert kwargs["timeout"] == 5.0
        assert kwargs["json"]["embeds"][0]["fields"][0]["name"] == "project_id"

    @pytest.mark.asyncio
    async def test_no_webhook_configured(self, no_webhook_url, mocker):
        """Scenario 2: Without DISCORD_WEBHOOK_URL nothing is sent."""
        mock_post = mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock)

        sent = await send_alert("WARNING", "IP auto-blocked")

        assert sent is False
        mock_post.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_does_not_raise(self, mock_webhook_url, mocker):
        """Scenario 3: A timeout is logged and reported as not sent."""
        mocker.patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.TimeoutException("timed out"),
        )
        mock_log = mocker.patch("app.utils.alerts.log")

        assert await send_alert("CRITICAL", "Task failed") is False
        mock_log.error.assert_called_once()

    @pytest.mark.asyncio
    async def test_http_error_does_not_raise(self, mock_webhook_url, mocker):
        """Scenario 4: A 4xx/5xx from Discord is logged and reported as not sent."""
        request = httpx.Request("POST", mock_webhook_url)
        response = httpx.Response(429, text="slow down", request=request)
        mocker.patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=response)

        assert await send_alert("WARNING", "Maintenance requeued stalled tasks") is False

    @pytest.mark.asyncio
    async def test_connection_error_does_not_raise(self, mock_webhook_url, mocker):
        """Scenario 5: Network failures are swallowed into a False result."""
        mocker.patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("refused"),
        )

        assert await send_alert("WARNING", "Build service down") is False
