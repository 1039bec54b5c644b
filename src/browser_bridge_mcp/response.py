"""Per-call response builder."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mcp import types

if TYPE_CHECKING:
    from .context import Context


@dataclass(frozen=True)
class ImageAttachment:
    content_type: str
    data: bytes


class Response:
    """Collects the outcome of a single tool call.

    Tools append text results and images; :meth:`serialize` turns them into
    the wire result. A response is scoped to exactly one call.
    """

    def __init__(self, context: Context, tool_name: str, tool_args: dict[str, Any]) -> None:
        self._context = context
        self.tool_name = tool_name
        self.tool_args = tool_args
        self._result: list[str] = []
        self._images: list[ImageAttachment] = []
        self._include_snapshot = False
        self._snapshot: str | None = None
        self._is_error = False

    def add_result(self, result: str) -> None:
        self._result.append(result)

    def add_error(self, error: str) -> None:
        self._result.append(error)
        self._is_error = True

    def result(self) -> str:
        return "\n".join(self._result)

    @property
    def is_error(self) -> bool:
        return self._is_error

    def add_image(self, content_type: str, data: bytes) -> None:
        self._images.append(ImageAttachment(content_type, data))

    def images(self) -> list[ImageAttachment]:
        return list(self._images)

    def set_include_snapshot(self) -> None:
        self._include_snapshot = True

    async def snapshot(self) -> str:
        """Page snapshot for this response, captured at most once."""
        if self._snapshot is None:
            if self._include_snapshot:
                self._snapshot = await self._context.snapshot()
            else:
                self._snapshot = ""
        return self._snapshot

    async def serialize(self) -> types.CallToolResult:
        lines: list[str] = []
        if self._result:
            lines.append("### Result")
            lines.append(self.result())
            lines.append("")

        snapshot = await self.snapshot()
        if snapshot:
            lines.append(snapshot)
            lines.append("")

        content: list[types.TextContent | types.ImageContent] = [
            types.TextContent(type="text", text="\n".join(lines))
        ]
        if self._context.config.image_responses != "omit":
            for image in self._images:
                content.append(
                    types.ImageContent(
                        type="image",
                        data=base64.b64encode(image.data).decode(),
                        mimeType=image.content_type,
                    )
                )
        return types.CallToolResult(content=content, isError=self._is_error)
