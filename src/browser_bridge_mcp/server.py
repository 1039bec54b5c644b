"""MCP server runtime that serves a :class:`ServerBackend` over a transport.

A backend declares a fixed catalog of tools and executes calls against
pre-validated arguments. The runtime owns everything protocol-facing:

- advertising the catalog with tool annotations
- validating and dispatching tool calls, turning every failure into an
  ``isError`` result instead of a protocol fault
- forwarding the ``initialized`` and ``close`` lifecycle events to observers
- an optional heartbeat that closes the connection once the peer stops
  answering pings
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Literal

import anyio
from anyio.abc import TaskGroup
from mcp import types
from mcp.server.models import InitializationOptions
from mcp.server.session import ServerSession
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 3.0
HEARTBEAT_TIMEOUT = 5.0

ToolType = Literal["readOnly", "destructive"]
ClientVersion = types.Implementation

InitializedObserver = Callable[[ClientVersion | None], Awaitable[None]]
CloseObserver = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ToolSchema:
    """Declaration of a tool: its identity, input model and side-effect type."""

    name: str
    title: str
    description: str
    input_schema: type[BaseModel]
    type: ToolType

    def to_wire(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema.model_json_schema(),
            annotations=types.ToolAnnotations(
                title=self.title,
                readOnlyHint=self.type == "readOnly",
                destructiveHint=self.type == "destructive",
                openWorldHint=True,
            ),
        )


class ServerBackend(abc.ABC):
    """Everything a component must provide to be served by :class:`ToolServer`.

    One instance is created per connection. ``call_tool`` only ever receives
    arguments that already validated against the tool's input model. The
    lifecycle hooks are optional and default to no-ops.
    """

    name: str
    version: str

    async def initialize(self) -> None:
        """Prepare the backend before it accepts any request."""

    @abc.abstractmethod
    def tools(self) -> Sequence[ToolSchema]:
        """Return the tool catalog. Queried once per connection."""

    @abc.abstractmethod
    async def call_tool(
        self, schema: ToolSchema, arguments: BaseModel
    ) -> types.CallToolResult:
        """Execute one tool from this backend's own catalog."""

    async def server_initialized(self, client_version: ClientVersion | None) -> None:
        """Called once the peer completed the initialize handshake."""

    async def server_closed(self) -> None:
        """Called once when the connection goes away."""


ServerBackendFactory = Callable[[], ServerBackend]


def text_result(text: str) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def error_result(*messages: str) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text="\n".join(messages))],
        isError=True,
    )


async def heartbeat(
    ping: Callable[[], Awaitable[Any]],
    interval: float = HEARTBEAT_INTERVAL,
    timeout: float = HEARTBEAT_TIMEOUT,
) -> None:
    """Run ``ping`` every ``interval`` seconds until it fails.

    Returns as soon as one ping raises or does not finish within
    ``timeout`` seconds. A slow ping is cancelled when its deadline passes.
    """
    while True:
        await anyio.sleep(interval)
        try:
            with anyio.fail_after(timeout):
                await ping()
        except TimeoutError:
            logger.warning(f"Heartbeat ping timed out after {timeout}s")
            return
        except Exception as e:
            logger.warning(f"Heartbeat ping failed: {e}")
            return


class ToolServer:
    """Binds one backend to one connection.

    The tool catalog is captured at construction and never re-read.
    """

    heartbeat_interval = HEARTBEAT_INTERVAL
    heartbeat_timeout = HEARTBEAT_TIMEOUT

    def __init__(self, backend: ServerBackend, run_heartbeat: bool = True) -> None:
        self.backend = backend
        self.run_heartbeat = run_heartbeat
        self._tools = list(backend.tools())
        self._tools_by_name = {tool.name: tool for tool in self._tools}
        self._initialized_observers: list[InitializedObserver] = []
        self._close_observers: list[CloseObserver] = []
        self._call_lock = anyio.Lock()
        self._session: ServerSession | None = None
        self._task_group: TaskGroup | None = None
        self._client_version: ClientVersion | None = None
        self._heartbeat_running = False
        self._closed = False
        self._handlers: dict[type, Callable[[Any], Awaitable[Any]]] = {
            types.PingRequest: self._handle_ping,
            types.ListToolsRequest: self._handle_list_tools,
            types.CallToolRequest: self._handle_call_tool,
        }

    @property
    def client_version(self) -> ClientVersion | None:
        return self._client_version

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_running

    def on_initialized(self, observer: InitializedObserver) -> None:
        """Register an observer for the end of the initialize handshake.

        Observers accumulate and run in registration order.
        """
        self._initialized_observers.append(observer)

    def on_close(self, observer: CloseObserver) -> None:
        """Register an observer for connection close. Runs at most once."""
        self._close_observers.append(observer)

    def initialization_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=self.backend.name,
            server_version=self.backend.version,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability()),
        )

    async def run(self, read_stream: Any, write_stream: Any) -> None:
        """Serve the connection until the peer leaves or :meth:`close` is called."""
        try:
            async with ServerSession(
                read_stream, write_stream, self.initialization_options()
            ) as session:
                async with anyio.create_task_group() as tg:
                    self._session = session
                    self._task_group = tg
                    async for message in session.incoming_messages:
                        await self._dispatch(message, session, tg)
                    # Peer hung up; stop the heartbeat and any in-flight call.
                    tg.cancel_scope.cancel()
        finally:
            self._task_group = None
            self._session = None
            with anyio.CancelScope(shield=True):
                await self._notify_closed()

    def close(self) -> None:
        """Close the connection from the server side."""
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()

    async def list_tools(self) -> types.ListToolsResult:
        return types.ListToolsResult(tools=[tool.to_wire() for tool in self._tools])

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None
    ) -> types.CallToolResult:
        """Validate and dispatch one call. Never raises for tool failures."""
        if self.run_heartbeat and not self._heartbeat_running:
            self._start_heartbeat()

        schema = self._tools_by_name.get(name)
        if schema is None:
            return error_result(f'Tool "{name}" not found')

        try:
            parsed = schema.input_schema.model_validate(arguments or {})
        except ValidationError as e:
            return error_result(str(e))

        async with self._call_lock:
            try:
                return await self.backend.call_tool(schema, parsed)
            except Exception as e:
                logger.exception(f"Error calling tool {name}")
                return error_result(str(e))

    async def _dispatch(self, message: Any, session: ServerSession, tg: TaskGroup) -> None:
        if isinstance(message, Exception):
            logger.warning(f"Transport error: {message}")
            return
        if isinstance(message, types.ClientNotification):
            if isinstance(message.root, types.InitializedNotification):
                client_params = session.client_params
                await self._notify_initialized(
                    client_params.clientInfo if client_params else None
                )
            return
        tg.start_soon(self._handle_request, message)

    async def _handle_request(self, responder: Any) -> None:
        request = responder.request.root
        handler = self._handlers.get(type(request))
        with responder:
            if handler is None:
                await responder.respond(
                    types.ErrorData(
                        code=types.METHOD_NOT_FOUND,
                        message=f"Method not found: {request.method}",
                    )
                )
                return
            result = await handler(request)
            await responder.respond(types.ServerResult(result))

    async def _handle_ping(self, request: types.PingRequest) -> types.EmptyResult:
        return types.EmptyResult()

    async def _handle_list_tools(self, request: types.ListToolsRequest) -> types.ListToolsResult:
        return await self.list_tools()

    async def _handle_call_tool(self, request: types.CallToolRequest) -> types.CallToolResult:
        return await self.call_tool(request.params.name, request.params.arguments)

    def _start_heartbeat(self) -> None:
        if self._task_group is None:
            return
        self._heartbeat_running = True
        self._task_group.start_soon(self._keep_alive)

    async def _ping(self) -> None:
        if self._session is None:
            raise RuntimeError("Connection is closed")
        await self._session.send_ping()

    async def _keep_alive(self) -> None:
        await heartbeat(self._ping, self.heartbeat_interval, self.heartbeat_timeout)
        logger.info("Peer stopped answering heartbeat, closing connection")
        self.close()

    async def _notify_initialized(self, client_version: ClientVersion | None) -> None:
        self._client_version = client_version
        for observer in list(self._initialized_observers):
            try:
                await observer(client_version)
            except Exception:
                logger.exception("Error in initialized observer")

    async def _notify_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for observer in list(self._close_observers):
            try:
                await observer()
            except Exception:
                logger.exception("Error in close observer")


def create_server(backend: ServerBackend, run_heartbeat: bool = True) -> ToolServer:
    """Wrap ``backend`` in a server that forwards lifecycle events to it."""
    server = ToolServer(backend, run_heartbeat)
    server.on_initialized(backend.server_initialized)
    server.on_close(backend.server_closed)
    return server


async def connect(
    backend_factory: ServerBackendFactory,
    read_stream: Any,
    write_stream: Any,
    run_heartbeat: bool = True,
) -> None:
    """Serve a fresh backend over the given streams until the connection ends.

    Initialization errors propagate before any request is read.
    """
    backend = backend_factory()
    await backend.initialize()
    server = create_server(backend, run_heartbeat)
    await server.run(read_stream, write_stream)
