"""Conversation-provider client: fetches recorded conversation transcripts.

The provider exposes transcripts at a per-conversation URL. Depending on the
recording pipeline the body is plain text, a JSON object with a `transcript`
or `text` field, or a list of utterance segments.

Usage:
    client = ConversationClient(api_key)
    transcript = await client.get_transcript(transcript_url)
"""

from typing import Any

from app.clients.base import ServiceClient
from app.config import get_conversation_api_key, get_transcript_timeout_seconds
from app.exceptions import ConversationProviderError, PipelineError
from app.utils.logging import get_logger

log = get_logger(__name__)


def extract_transcript_text(body: Any) -> str:
    """Normalize the accepted transcript shapes into plain text.

    Example:
        >>> extract_transcript_text([{"speaker": "a", "text": "Hi"}, {"content": "Hello"}])
        'Hi\\nHello'
        >>> extract_transcript_text({"transcript": "full text"})
        'full text'
    """
    if body is None:
        return ""
    if isinstance(body, str):
        return body.strip()
    if isinstance(body, dict):
        for key in ("transcript", "text"):
            value = body.get(key)
            if isinstance(value, (str, list)):
                return extract_transcript_text(value)
        return ""
    if isinstance(body, list):
        lines = []
        for segment in body:
            if isinstance(segment, str):
                text = segment
            elif isinstance(segment, dict):
                text = segment.get("text") or segment.get("content") or ""
            else:
                continue
            if text:
                lines.append(str(text).strip())
        return "\n".join(lines)
    return ""


class ConversationClient(ServiceClient):
    """Transcript fetcher for the conversation provider (x-api-key auth)."""

    service_name = "Conversation provider"

    def __init__(self, api_key: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("timeout", get_transcript_timeout_seconds())
        kwargs.setdefault("max_rate", 5)
        super().__init__("", **kwargs)
        self.api_key = api_key if api_key is not None else get_conversation_api_key()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json, text/plain"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def _error(self, message: str, upstream_status: int | None = None) -> PipelineError:
        return ConversationProviderError(message, upstream_status)

    async def get_transcript(self, transcript_url: str) -> str:
        """Download a transcript and return it as plain text.

        Returns:
            Transcript text ("" if the provider returned nothing usable).

        Raises:
            ConversationProviderError: Transport failure or error response.
        """
        body = await self.request("GET", transcript_url)
        transcript = extract_transcript_text(body)
        log.info(
            "transcript_fetched",
            url=transcript_url,
            characters=len(transcript),
        )
        return transcript
