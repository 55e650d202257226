"""
Todoist Sync API Client.

Async client for the cursor-based Sync endpoint:
- Full snapshot (cursor "*") and incremental fetches
- Rate limiting and retry logic
- Error mapping to the sync error taxonomy
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable

import httpx

from task_sync.config import Settings
from task_sync.core.state import mask_token
from task_sync.errors import InvalidCursorError, TransportError
from task_sync.models import SYNC_RESOURCE_KINDS, SyncBatch
from task_sync.utils.logger import get_logger


logger = get_logger(__name__)

USER_AGENT = "task-sync"


class TodoistClient:
    """
    Todoist Sync API client.

    Example:
        async with TodoistClient(api_token="your-api-token") as client:
            batch = await client.fetch("*", ["projects", "sections", "items"])
            print(batch.new_cursor, len(batch.tasks))
    """

    SYNC_PATH = "/sync/v9/sync"

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.todoist.com",
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            api_token: Bearer token for the remote API
            base_url: API base URL
            timeout: Per-request timeout in seconds
            max_retries: Attempts per request on 429 or transport errors
            retry_delay: Base delay between retries (multiplied by attempt)
            transport: Optional httpx transport (tests inject a mock here)
        """
        if not api_token:
            raise ValueError("API token is required")

        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TodoistClient":
        return cls(
            api_token=settings.api_token.get_secret_value(),
            base_url=settings.base_url,
            timeout=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
        )

    @property
    def sync_url(self) -> str:
        return f"{self.base_url}{self.SYNC_PATH}"

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Bearer {self.api_token}",
            "User-Agent": USER_AGENT,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._get_headers(),
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TodoistClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Make an API request with error handling and retry logic.

        Handles:
        - Rate limiting with Retry-After back-off
        - Transient transport errors with retry
        - Rejected sync tokens
        """
        client = await self._get_client()

        for attempt in range(self.max_retries):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt < self.max_retries - 1:
                    logger.debug("Transport error (attempt %d): %s", attempt + 1, e)
                    await asyncio.sleep(self.retry_delay * (attempt + 1))
                    continue
                raise TransportError(f"Connection error: {e}", operation="fetch") from e

            if response.status_code == 429:
                retry_after = _retry_after(response, default=self.retry_delay)
                if attempt < self.max_retries - 1:
                    logger.warning("Rate limited, retrying in %.1fs", retry_after)
                    await asyncio.sleep(retry_after)
                    continue
                raise TransportError(
                    "Rate limit exceeded", status=429, operation="fetch"
                )

            if response.status_code >= 400:
                raise self._error_from_response(response)

            try:
                data = response.json()
            except ValueError as e:
                raise TransportError(
                    f"Failed to decode response: {e}",
                    status=response.status_code,
                    operation="fetch",
                ) from e

            if not isinstance(data, dict):
                raise TransportError(
                    "Unexpected response body", status=response.status_code, operation="fetch"
                )
            return data

        raise TransportError("Max retries exceeded", operation="fetch")

    def _error_from_response(self, response: httpx.Response) -> TransportError:
        status = response.status_code
        message = response.text
        tag = ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("error") or message)
            tag = str(body.get("error_tag") or "")

        if status == 400 and ("SYNC_TOKEN" in tag.upper() or "sync_token" in message.lower()):
            return InvalidCursorError(
                f"Remote rejected sync token: {message}", status=status, operation="fetch"
            )
        return TransportError(f"API error (HTTP {status}): {message}", status=status, operation="fetch")

    async def fetch(
        self,
        cursor: str,
        resource_kinds: Iterable[str] = SYNC_RESOURCE_KINDS,
    ) -> SyncBatch:
        """
        Fetch the changes since ``cursor``.

        Args:
            cursor: Stored sync token, or "*" for a full snapshot
            resource_kinds: Resource types to request

        Returns:
            SyncBatch with the new cursor and changed entities
        """
        kinds = list(resource_kinds)
        logger.debug("Fetching %s since token %s", ",".join(kinds), mask_token(cursor))

        data = await self._request(
            "POST",
            self.sync_url,
            data={
                "sync_token": cursor,
                "resource_types": json.dumps(kinds),
            },
        )

        try:
            return SyncBatch.from_response(data)
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"Malformed sync response: {e}", operation="fetch") from e


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except ValueError:
        return default
