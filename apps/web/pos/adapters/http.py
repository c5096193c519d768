"""HTTP helpers shared by the POS adapters."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from apps.web.pos.exceptions import (
    POSAPIError,
    POSAuthError,
    POSNotFoundError,
    POSRateLimitError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_AFTER_SECONDS = 60


class RateLimiter:
    """Simple rate limiter for API requests."""

    def __init__(self, requests_per_second: float = 10.0) -> None:
        self.min_interval = 1.0 / requests_per_second
        self.last_request: datetime | None = None
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request can be made within rate limits."""
        async with self._lock:
            if self.last_request:
                elapsed = (datetime.now(UTC) - self.last_request).total_seconds()
                if elapsed < self.min_interval:
                    await asyncio.sleep(self.min_interval - elapsed)
            self.last_request = datetime.now(UTC)


def build_client(timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    """Create an AsyncClient with bounded connect/read timeouts."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
    )


def _parse_retry_after(value: str | None) -> int:
    if not value:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        return max(0, int(float(value)))
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    provider: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send one request and classify failures into the POS error taxonomy.

    No inline retries: timeouts and transport errors surface as retryable
    POSAPIError and are retried through the job queue.

    Raises:
        POSAuthError: On 401/403.
        POSNotFoundError: On 404.
        POSRateLimitError: On 429 (retry_after from the Retry-After header).
        POSAPIError: On any other non-2xx, timeout or transport error.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise POSAPIError(
            f"{provider} request timed out: {method} {url}",
            provider=provider,
        ) from e
    except httpx.RequestError as e:
        raise POSAPIError(
            f"{provider} request failed: {e}",
            provider=provider,
        ) from e

    status = response.status_code
    if status < 400:
        return response

    if status == 429:
        raise POSRateLimitError(
            f"{provider} rate limit exceeded",
            provider=provider,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status in (401, 403):
        raise POSAuthError(
            f"{provider} rejected credentials ({status})",
            provider=provider,
        )
    if status == 404:
        raise POSNotFoundError(
            f"{provider} resource not found: {url}",
            provider=provider,
            status_code=404,
            response_body=response.text,
        )

    logger.warning("%s API error %d for %s %s", provider, status, method, url)
    raise POSAPIError(
        f"{provider} API error: {status}",
        provider=provider,
        status_code=status,
        response_body=response.text,
    )


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value / 1000, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
