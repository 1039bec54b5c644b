"""Browser tools served by :class:`~browser_bridge_mcp.backend.BrowserServerBackend`.

Each tool pairs a :class:`ToolSchema` with a handler that drives the page
through the runner and records its outcome on the call's :class:`Response`.
"""

from __future__ import annotations

import base64
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import anyio
from pydantic import BaseModel, Field, model_validator

from .client import BridgeError
from .config import Config
from .context import Context
from .response import Response
from .server import ToolSchema
from .snapshot import annotate_screenshot

MAX_WAIT_SECONDS = 30.0
TEXT_POLL_INTERVAL = 0.5

ToolHandler = Callable[[Context, Any, Response], Awaitable[None]]


@dataclass(frozen=True)
class Tool:
    """A tool implementation gated behind a capability tag."""

    capability: str
    schema: ToolSchema
    handle: ToolHandler


# -----------------------------------------------------------------------------
# Input models
# -----------------------------------------------------------------------------


class NoInput(BaseModel):
    pass


class NavigateInput(BaseModel):
    url: str = Field(description="The URL to navigate to")


class ElementInput(BaseModel):
    element: str = Field(
        description="Human-readable element description used to obtain permission to interact with the element"
    )
    ref: str = Field(description="Exact target element ref from the page snapshot (e.g. @e3)")


class TypeInput(ElementInput):
    text: str = Field(description="Text to type into the element")


class ScreenshotInput(BaseModel):
    annotate: bool = Field(
        default=False,
        description="Overlay element refs from the page snapshot on the screenshot",
    )


class WaitForInput(BaseModel):
    time: float | None = Field(default=None, description="The time to wait in seconds")
    text: str | None = Field(default=None, description="The text to wait for")
    text_gone: str | None = Field(default=None, description="The text to wait for to disappear")

    @model_validator(mode="after")
    def _require_condition(self) -> WaitForInput:
        if self.time is None and self.text is None and self.text_gone is None:
            raise ValueError("Either time, text or text_gone must be provided")
        return self


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------


async def _snapshot(context: Context, params: NoInput, response: Response) -> None:
    response.set_include_snapshot()


async def _navigate(context: Context, params: NavigateInput, response: Response) -> None:
    (await context.client().navigate(params.url)).unwrap()
    response.add_result(f"Navigated to {params.url}")
    response.set_include_snapshot()


async def _element_action(
    context: Context,
    params: ElementInput,
    response: Response,
    action: str,
    action_params: dict[str, Any] | None = None,
) -> None:
    element_id = context.resolve(params.ref)
    (await context.client().element_action(element_id, action, action_params)).unwrap()
    response.set_include_snapshot()


async def _click(context: Context, params: ElementInput, response: Response) -> None:
    await _element_action(context, params, response, "click")
    response.add_result(f"Clicked {params.element}")


async def _hover(context: Context, params: ElementInput, response: Response) -> None:
    await _element_action(context, params, response, "hover")
    response.add_result(f"Hovered over {params.element}")


async def _type(context: Context, params: TypeInput, response: Response) -> None:
    await _element_action(context, params, response, "type", {"text": params.text})
    response.add_result(f"Typed {params.text!r} into {params.element}")


async def _screenshot(context: Context, params: ScreenshotInput, response: Response) -> None:
    data = (await context.client().screenshot()).unwrap()
    screenshot_b64 = data.get("screenshot", "")
    if not screenshot_b64:
        raise BridgeError("No screenshot data returned")

    if params.annotate:
        page = await context.page_data()
        png = annotate_screenshot(
            screenshot_b64,
            page.get("elements", []),
            data.get("width", 0),
            data.get("height", 0),
            context.refs,
        )
    else:
        png = base64.b64decode(screenshot_b64)
    response.add_result("Took a screenshot of the current page")
    response.add_image("image/png", png)


async def _navigate_back(context: Context, params: NoInput, response: Response) -> None:
    (await context.client().go_back()).unwrap()
    response.add_result("Navigated back")
    response.set_include_snapshot()


async def _navigate_forward(context: Context, params: NoInput, response: Response) -> None:
    (await context.client().go_forward()).unwrap()
    response.add_result("Navigated forward")
    response.set_include_snapshot()


async def _wait_for(context: Context, params: WaitForInput, response: Response) -> None:
    if params.time is not None:
        await anyio.sleep(min(params.time, MAX_WAIT_SECONDS))

    if params.text is not None or params.text_gone is not None:
        with anyio.move_on_after(MAX_WAIT_SECONDS) as scope:
            while True:
                page = await context.snapshot()
                appeared = params.text is None or params.text in page
                gone = params.text_gone is None or params.text_gone not in page
                if appeared and gone:
                    break
                await anyio.sleep(TEXT_POLL_INTERVAL)
        if scope.cancelled_caught:
            raise TimeoutError(f"Timed out after {MAX_WAIT_SECONDS:g}s waiting for page text")

    if params.text is not None:
        response.add_result(f"Text {params.text!r} appeared")
    elif params.text_gone is not None:
        response.add_result(f"Text {params.text_gone!r} disappeared")
    else:
        response.add_result(f"Waited for {params.time}s")
    response.set_include_snapshot()


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------

ALL_TOOLS: list[Tool] = [
    Tool(
        capability="core",
        schema=ToolSchema(
            name="browser_snapshot",
            title="Page snapshot",
            description="Capture a snapshot of the current page. Element refs from the snapshot are used by the other tools.",
            input_schema=NoInput,
            type="readOnly",
        ),
        handle=_snapshot,
    ),
    Tool(
        capability="core",
        schema=ToolSchema(
            name="browser_navigate",
            title="Navigate to a URL",
            description="Navigate to a URL",
            input_schema=NavigateInput,
            type="destructive",
        ),
        handle=_navigate,
    ),
    Tool(
        capability="core",
        schema=ToolSchema(
            name="browser_click",
            title="Click",
            description="Perform click on a web page",
            input_schema=ElementInput,
            type="destructive",
        ),
        handle=_click,
    ),
    Tool(
        capability="core",
        schema=ToolSchema(
            name="browser_hover",
            title="Hover mouse",
            description="Hover over element on page",
            input_schema=ElementInput,
            type="readOnly",
        ),
        handle=_hover,
    ),
    Tool(
        capability="core",
        schema=ToolSchema(
            name="browser_type",
            title="Type text",
            description="Type text into editable element",
            input_schema=TypeInput,
            type="destructive",
        ),
        handle=_type,
    ),
    Tool(
        capability="core",
        schema=ToolSchema(
            name="browser_take_screenshot",
            title="Take a screenshot",
            description="Take a screenshot of the current page. Use browser_snapshot to perform actions, not this tool.",
            input_schema=ScreenshotInput,
            type="readOnly",
        ),
        handle=_screenshot,
    ),
    Tool(
        capability="history",
        schema=ToolSchema(
            name="browser_navigate_back",
            title="Go back",
            description="Go back to the previous page",
            input_schema=NoInput,
            type="readOnly",
        ),
        handle=_navigate_back,
    ),
    Tool(
        capability="history",
        schema=ToolSchema(
            name="browser_navigate_forward",
            title="Go forward",
            description="Go forward to the next page",
            input_schema=NoInput,
            type="readOnly",
        ),
        handle=_navigate_forward,
    ),
    Tool(
        capability="wait",
        schema=ToolSchema(
            name="browser_wait_for",
            title="Wait for",
            description="Wait for text to appear or disappear or a specified time to pass",
            input_schema=WaitForInput,
            type="readOnly",
        ),
        handle=_wait_for,
    ),
]


def filtered_tools(config: Config, tools: list[Tool] | None = None) -> list[Tool]:
    """Core tools plus those whose capability is enabled in ``config``."""
    candidates = ALL_TOOLS if tools is None else tools
    return [
        tool
        for tool in candidates
        if tool.capability.startswith("core") or tool.capability in config.capabilities
    ]
