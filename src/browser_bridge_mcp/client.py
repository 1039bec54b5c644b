"""HTTP client for the UI Bridge runner that drives the browser."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def get_windows_host() -> str:
    """Get the Windows host IP address from WSL.

    In WSL2, the Windows host is accessible via the IP in /etc/resolv.conf.
    Falls back to localhost for native Windows/Mac/Linux.
    """
    try:
        with open("/etc/resolv.conf") as f:
            for line in f:
                if line.startswith("nameserver"):
                    return line.split()[1]
    except (FileNotFoundError, IndexError):
        pass
    return "localhost"


class BridgeError(RuntimeError):
    """Raised when the runner rejects or fails a request."""


@dataclass
class BridgeResponse:
    """Response from the runner API."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    def unwrap(self) -> dict[str, Any]:
        """Return the payload, raising :class:`BridgeError` on failure."""
        if not self.success:
            raise BridgeError(self.error or "Runner request failed")
        return self.data or {}


class BridgeClient:
    """Async HTTP client for the browser page behind the UI Bridge runner.

    All page operations go through the runner's SDK proxy
    (``/ui-bridge/sdk/*``), which forwards them to the connected page.
    """

    def __init__(
        self,
        host: str,
        port: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = f"http://{host}:{port}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=DEFAULT_TIMEOUT,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> BridgeResponse:
        client = self._get_client()
        try:
            response = await client.request(
                method, endpoint, json=json_data, timeout=timeout
            )
            response.raise_for_status()
            data = response.json()
            return BridgeResponse(
                success=data.get("success", False),
                data=data.get("data"),
                error=data.get("error"),
            )
        except httpx.ConnectError as e:
            return BridgeResponse(
                success=False,
                error=f"Cannot connect to runner at {self.base_url}. Is it running? Error: {e}",
            )
        except httpx.HTTPStatusError as e:
            return BridgeResponse(
                success=False,
                error=f"API error: {e.response.status_code} - {e.response.text}",
            )
        except httpx.TimeoutException:
            return BridgeResponse(
                success=False,
                error=f"Request timed out after {timeout}s",
            )

    async def health(self) -> BridgeResponse:
        return await self._request("GET", "/health")

    async def snapshot(self) -> BridgeResponse:
        """Get all registered page elements with their current state."""
        return await self._request("GET", "/ui-bridge/sdk/snapshot")

    async def element_action(
        self, element_id: str, action: str, params: dict[str, Any] | None = None
    ) -> BridgeResponse:
        """Execute an action (click, type, focus, hover) on an element.

        Args:
            element_id: The element's data-ui-id.
            action: Action to perform.
            params: Optional params (e.g., {"text": "hello"} for type).
        """
        body: dict[str, Any] = {"action": action}
        if params:
            body["params"] = params
        return await self._request(
            "POST", f"/ui-bridge/sdk/element/{element_id}/action", body
        )

    async def screenshot(self) -> BridgeResponse:
        """Capture a screenshot of the page. Data holds base64 PNG."""
        return await self._request("GET", "/ui-bridge/sdk/screenshot")

    async def navigate(self, url: str) -> BridgeResponse:
        return await self._request("POST", "/ui-bridge/sdk/page/navigate", {"url": url})

    async def go_back(self) -> BridgeResponse:
        return await self._request("POST", "/ui-bridge/sdk/page/back")

    async def go_forward(self) -> BridgeResponse:
        return await self._request("POST", "/ui-bridge/sdk/page/forward")
