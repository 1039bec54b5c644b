"""Backend exposing the full browser tool catalog over one browser session."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from importlib.metadata import PackageNotFoundError, version

from mcp import types
from pydantic import BaseModel

from .config import Config
from .context import ClientFactory, Context
from .response import Response
from .server import ClientVersion, ServerBackend, ToolSchema
from .session_log import SessionLog
from .tools import Tool, filtered_tools

logger = logging.getLogger(__name__)


def package_version() -> str:
    try:
        return version("browser-bridge-mcp")
    except PackageNotFoundError:
        return "0.0.0"


class BrowserServerBackend(ServerBackend):
    """Serves the capability-filtered tools against a single :class:`Context`."""

    name = "Browser Bridge"

    def __init__(
        self,
        config: Config,
        create_client: ClientFactory,
        tools: Sequence[Tool] | None = None,
    ) -> None:
        self.version = package_version()
        self.onclose: Callable[[], None] | None = None
        self._tools = filtered_tools(config, None if tools is None else list(tools))
        self._context = Context(self._tools, config, create_client)
        self._session_log: SessionLog | None = None
        self._closed = False

    @property
    def context(self) -> Context:
        return self._context

    async def initialize(self) -> None:
        if self._context.config.save_session:
            self._session_log = await SessionLog.create(self._context.config)

    def tools(self) -> list[ToolSchema]:
        return [tool.schema for tool in self._tools]

    async def call_tool(self, schema: ToolSchema, arguments: BaseModel) -> types.CallToolResult:
        response = Response(self._context, schema.name, arguments.model_dump(mode="json"))
        tool = next(tool for tool in self._tools if tool.schema.name == schema.name)
        await tool.handle(self._context, arguments, response)
        if self._session_log:
            await self._session_log.log(response)
        return await response.serialize()

    async def server_initialized(self, client_version: ClientVersion | None) -> None:
        self._context.client_version = client_version

    async def server_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.onclose:
            self.onclose()
        try:
            await self._context.dispose()
        except Exception:
            logger.exception("Failed to dispose browser context")
