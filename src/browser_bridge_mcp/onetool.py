"""Backend that hides the browser catalog behind a single task tool.

The task is handed to an agent loop which drives a nested browser backend
through an in-process MCP session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AsyncExitStack

import anyio
from mcp import ClientSession, types
from pydantic import BaseModel, Field

from .backend import BrowserServerBackend, package_version
from .config import Config
from .context import Context, client_factory
from .loop import LLMDelegate, delegate_from_env, run_task, summarize
from .server import ServerBackend, ToolSchema, create_server, text_result
from .transport import connect_in_process

logger = logging.getLogger(__name__)


class TaskInput(BaseModel):
    task: str = Field(description="The task to perform with the browser")


ONE_TOOL_SCHEMA = ToolSchema(
    name="browser",
    title="Perform a task with the browser",
    description="Perform a task with the browser. It can click, type, take screenshots, hover, navigate, etc.",
    input_schema=TaskInput,
    type="destructive",
)


class OneToolServerBackend(ServerBackend):
    """Serves one coarse ``browser`` tool backed by a nested browser session.

    The nested session lives in its own task for as long as the outer
    connection, so its cancel scopes never interleave with the caller's.
    """

    name = "Browser Bridge"

    def __init__(
        self,
        config: Config,
        delegate_factory: Callable[[], LLMDelegate] = delegate_from_env,
        inner_backend_factory: Callable[[], ServerBackend] | None = None,
    ) -> None:
        self.version = package_version()
        self._config = config
        self._delegate_factory = delegate_factory
        self._inner_backend_factory = inner_backend_factory or self._default_inner_backend
        self._delegate: LLMDelegate | None = None
        self._inner_client: ClientSession | None = None
        self._exit_stack: AsyncExitStack | None = None
        self._stop = anyio.Event()
        self._closed = False

    def _default_inner_backend(self) -> ServerBackend:
        return BrowserServerBackend(self._config, client_factory(self._config))

    async def initialize(self) -> None:
        """Start the nested browser session and check that it answers."""
        stack = AsyncExitStack()
        try:
            delegate = self._delegate_factory()
            stack.push_async_callback(delegate.aclose)

            inner = self._inner_backend_factory()
            stack.push_async_callback(inner.server_closed)
            await inner.initialize()

            ready: asyncio.Future[ClientSession] = asyncio.get_running_loop().create_future()
            session_task = asyncio.create_task(self._host_session(inner, ready))
            stack.push_async_callback(self._stop_session, session_task)
            client = await ready
        except BaseException:
            await stack.aclose()
            raise

        self._delegate = delegate
        self._inner_client = client
        self._exit_stack = stack

    async def _host_session(
        self, inner: ServerBackend, ready: asyncio.Future[ClientSession]
    ) -> None:
        server = create_server(inner, run_heartbeat=False)
        try:
            async with connect_in_process(server) as client:
                await client.send_ping()
                if not ready.done():
                    ready.set_result(client)
                await self._stop.wait()
        except Exception as e:
            if ready.done():
                raise
            ready.set_exception(e)

    async def _stop_session(self, session_task: asyncio.Task[None]) -> None:
        self._stop.set()
        await session_task

    def tools(self) -> list[ToolSchema]:
        return [ONE_TOOL_SCHEMA]

    async def call_tool(  # type: ignore[override]
        self, schema: ToolSchema, arguments: TaskInput
    ) -> types.CallToolResult:
        if self._inner_client is None or self._delegate is None:
            raise RuntimeError("Browser session is not initialized")
        messages = await run_task(self._delegate, self._inner_client, arguments.task)
        return text_result(summarize(messages))

    async def server_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        stack, self._exit_stack = self._exit_stack, None
        self._inner_client = None
        self._delegate = None
        if stack is not None:
            try:
                await stack.aclose()
            except Exception:
                logger.exception("Failed to close nested browser session")
        # The nested context outlives this connection's bookkeeping.
        await Context.dispose_all()
