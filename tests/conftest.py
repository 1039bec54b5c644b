"""Shared fixtures and fakes for the browser bridge tests."""

from __future__ import annotations

import base64
import io
import json
from collections.abc import Iterator
from typing import Any

import httpx
import pytest  # type: ignore[import-not-found]
from PIL import Image

from browser_bridge_mcp.client import BridgeClient
from browser_bridge_mcp.context import Context
from browser_bridge_mcp.loop import LLMConversation, LLMDelegate, LLMMessage, LLMToolCall


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_contexts() -> Iterator[None]:
    Context._all_contexts.clear()
    yield
    Context._all_contexts.clear()


def png_b64(width: int = 40, height: int = 30) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode()


def _el(
    id: str,
    type: str = "button",
    label: str = "",
    visible: bool = True,
    enabled: bool = True,
    value: str | None = None,
    x: float = 0,
    y: float = 0,
    w: float = 10,
    h: float = 10,
) -> dict[str, Any]:
    """Build a mock element dict."""
    state: dict[str, Any] = {
        "visible": visible,
        "enabled": enabled,
        "rect": {"x": x, "y": y, "width": w, "height": h},
    }
    if value is not None:
        state["value"] = value
    return {"id": id, "type": type, "label": label, "state": state}


class FakeRunner:
    """In-memory stand-in for the UI Bridge runner HTTP API."""

    def __init__(self) -> None:
        self.url = "http://example.test/"
        self.title = "Example"
        self.elements: list[dict[str, Any]] = [
            _el("btn-submit", label="Submit"),
            _el("input-name", type="input", label="Name"),
            _el("hidden-thing", visible=False),
        ]
        self.requests: list[tuple[str, str, Any]] = []
        self.fail_paths: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = request.read()
        payload = json.loads(body) if body else None
        path = request.url.path
        self.requests.append((request.method, path, payload))

        if path in self.fail_paths:
            return httpx.Response(200, json={"success": False, "error": "runner said no"})
        if path == "/ui-bridge/sdk/snapshot":
            data = {"url": self.url, "title": self.title, "elements": self.elements}
        elif path == "/ui-bridge/sdk/page/navigate":
            self.url = payload["url"]
            data = {}
        elif path == "/ui-bridge/sdk/screenshot":
            data = {"screenshot": png_b64(), "width": 40, "height": 30}
        elif path.startswith("/ui-bridge/sdk/element/"):
            data = {"ok": True}
        elif path in ("/ui-bridge/sdk/page/back", "/ui-bridge/sdk/page/forward", "/health"):
            data = {}
        else:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, json={"success": True, "data": data})

    def client(self) -> BridgeClient:
        return BridgeClient("runner.test", 9876, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


def call(name: str, arguments: dict[str, Any] | None = None, id: str | None = None) -> LLMToolCall:
    return LLMToolCall(name=name, arguments=arguments or {}, id=id or f"call-{name}")


class ScriptedDelegate(LLMDelegate):
    """Model stand-in that replays one list of tool calls per turn."""

    def __init__(self, steps: list[list[LLMToolCall]]) -> None:
        self.steps = list(steps)
        self.conversation: LLMConversation | None = None
        self.closed = False

    async def make_api_call(self, conversation: LLMConversation) -> list[LLMToolCall]:
        self.conversation = conversation
        tool_calls = self.steps.pop(0) if self.steps else []
        conversation.messages.append(
            LLMMessage(role="assistant", content="", tool_calls=tool_calls)
        )
        return tool_calls

    async def aclose(self) -> None:
        self.closed = True
