"""Shared HTTP plumbing for external service clients.

Every outbound call goes through ServiceClient.request(), which provides:
- Client-side throttling via AsyncLimiter
- A per-request deadline (httpx timeout)
- Retry with exponential backoff for transient errors (408, 429, 5xx,
  timeouts, connection failures) via tenacity
- Translation of the final failure into the client's error type

The retries here happen inside one task attempt. When they are exhausted the
error reaches the worker, and the task queue applies its own backoff.
"""

from typing import Any

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from app.exceptions import ExternalServiceError, PipelineError
from app.utils.logging import get_logger

log = get_logger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def is_transient_http_error(exception: BaseException) -> bool:
    """True for failures worth retrying within the same attempt."""
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in TRANSIENT_STATUS_CODES
    return isinstance(exception, (httpx.TimeoutException, httpx.TransportError))


def _error_detail(response: httpx.Response) -> str:
    """Best human-readable reason from an error response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return str(body.get("message") or error or response.reason_phrase)
    return response.reason_phrase


class ServiceClient:
    """Base class for rate-limited, retrying JSON-over-HTTP clients.

    Subclasses set `service_name` and override `_error()` to raise their own
    exception type.

    Args:
        base_url: Service root URL (no trailing slash).
        timeout: Per-request deadline in seconds.
        max_rate: Requests allowed per `time_period` seconds.
        time_period: Throttling window in seconds.
        max_attempts: Attempts per request (1 disables retries).
        retry_wait: tenacity wait strategy (tests pass wait_none()).
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    service_name = "external service"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_rate: float = 10,
        time_period: float = 1,
        max_attempts: int = 3,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=8)
        self.rate_limiter = AsyncLimiter(max_rate=max_rate, time_period=time_period)
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _get_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _error(self, message: str, upstream_status: int | None = None) -> PipelineError:
        return ExternalServiceError(message, upstream_status)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self.rate_limiter:
            response = await self.client.request(
                method, url, headers=self._get_headers(), **kwargs
            )
        if response.status_code in TRANSIENT_STATUS_CODES:
            response.raise_for_status()
        return response

    async def request(self, method: str, path_or_url: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON (or text) body.

        Args:
            method: HTTP method.
            path_or_url: Absolute URL, or a path appended to base_url.
            **kwargs: Passed to httpx (json=, params=, ...).

        Raises:
            PipelineError: Subclass chosen by _error(), once retries are
                exhausted or on a non-transient error response.
        """
        url = (
            path_or_url
            if path_or_url.startswith(("http://", "https://"))
            else f"{self.base_url}/{path_or_url.lstrip('/')}"
        )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(is_transient_http_error),
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                reraise=True,
                before_sleep=lambda retry_state: log.warning(
                    "external_request_retry",
                    service=self.service_name,
                    url=url,
                    attempt=retry_state.attempt_number,
                    error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
                ),
            ):
                with attempt:
                    response = await self._send(method, url, **kwargs)
        except httpx.HTTPStatusError as e:
            raise self._error(
                f"{self.service_name} error: {_error_detail(e.response)}",
                e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise self._error(f"{self.service_name} request timed out: {e}") from e
        except httpx.TransportError as e:
            raise self._error(f"{self.service_name} connection failed: {e}") from e

        if response.is_error:
            log.error(
                "external_request_rejected",
                service=self.service_name,
                url=url,
                status_code=response.status_code,
            )
            raise self._error(
                f"{self.service_name} error: {_error_detail(response)}",
                response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self) -> None:
        await self.client.aclose()
