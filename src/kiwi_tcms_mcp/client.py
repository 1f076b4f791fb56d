"""HTTP client for the Kiwi TCMS MCP bridge.

Lets Python callers use the bridge's HTTP surface while keeping the
bridge's error kinds: a 503 comes back as WorkerUnavailable, a 504 as
CallTimeout, and so on.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from kiwi_tcms_mcp.errors import (
    BridgeError,
    CallTimeout,
    DuplicateId,
    WorkerCrashed,
    WorkerUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8184"

# Slightly above the bridge's own 120s request deadline
DEFAULT_TIMEOUT_SECONDS = 130.0

_STATUS_ERRORS: dict[int, type[BridgeError]] = {
    409: DuplicateId,
    502: WorkerCrashed,
    503: WorkerUnavailable,
    504: CallTimeout,
}


class BridgeClientError(BridgeError):
    """Unexpected failure talking to the bridge."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        request_id: Any = None,
    ) -> None:
        super().__init__(message, request_id=request_id)
        if status_code is not None:
            self.status_code = status_code


class BridgeClient:
    """Async HTTP client for the bridge's /mcp, /health and /info endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the bridge.
            timeout_seconds: HTTP timeout for each request.
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized.

        Returns:
            The initialized async HTTP client.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Accept": "application/json", "User-Agent": "kiwi_tcms_mcp/1.0.0"},
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _raise_for_error(self, response: httpx.Response) -> None:
        """Convert an error response into the matching bridge error.

        Raises:
            BridgeError: Subclass matching the status code.
        """
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or f"HTTP {response.status_code}: {response.text[:200]}"
        request_id = body.get("request_id")

        error_cls = _STATUS_ERRORS.get(response.status_code)
        if error_cls is not None:
            raise error_cls(message, request_id=request_id)
        raise BridgeClientError(message, status_code=response.status_code, request_id=request_id)

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        """Make an HTTP request and return the JSON response.

        Returns:
            Parsed JSON response, or None for 202 Accepted.

        Raises:
            BridgeError: If the request fails or returns a non-2xx status.
        """
        client = await self._ensure_client()

        try:
            response = await client.request(method, path, json=json_body)
        except httpx.RequestError as e:
            logger.error("HTTP request error: %s", e)
            raise BridgeClientError(f"Request failed: {e}") from e

        log_extra = {"status": response.status_code, "method": method, "path": path}
        if not response.is_success:
            logger.warning("HTTP request failed", extra=log_extra)
            self._raise_for_error(response)
        logger.debug("HTTP request succeeded", extra=log_extra)

        if response.status_code == 202 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BridgeClientError(
                "Invalid JSON in response body", status_code=response.status_code
            ) from e

    async def get_health(self) -> dict[str, Any]:
        """Get health status of the bridge and its worker.

        Returns:
            Health status as dictionary.
        """
        return await self._request("GET", "/health")

    async def get_info(self) -> dict[str, Any]:
        """Get service information.

        Returns:
            Service description as dictionary.
        """
        return await self._request("GET", "/info")

    async def call(self, message: dict[str, Any]) -> dict[str, Any]:
        """Send a JSON-RPC request through the bridge.

        Args:
            message: JSON-RPC request object.

        Returns:
            The worker's response message.
        """
        return await self._request("POST", "/mcp", json_body=message)

    async def notify(self, message: dict[str, Any]) -> None:
        """Send a JSON-RPC notification through the bridge.

        Args:
            message: JSON-RPC notification (no id).
        """
        await self._request("POST", "/mcp", json_body=message)


@asynccontextmanager
async def create_client(
    base_url: str = DEFAULT_BASE_URL,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> AsyncIterator[BridgeClient]:
    """Create and manage bridge client lifecycle.

    Args:
        base_url: Base URL of the bridge.
        timeout_seconds: HTTP timeout for each request.

    Yields:
        Initialized bridge client.
    """
    client = BridgeClient(base_url, timeout_seconds)
    try:
        yield client
    finally:
        await client.close()
