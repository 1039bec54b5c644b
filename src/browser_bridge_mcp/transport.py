"""Transports that carry MCP sessions to a :class:`ToolServer`.

- in-process: a client session wired straight to a server in the same
  event loop, with the same handshake as a networked session
- stdio: one connection over the process's stdin/stdout
- HTTP: SSE on ``/sse`` and streamable HTTP on ``/mcp``, one backend per
  session, with heartbeat enabled
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import anyio
import uvicorn
from anyio.abc import TaskGroup, TaskStatus
from mcp import ClientSession, types
from mcp.server.sse import SseServerTransport
from mcp.server.stdio import stdio_server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.shared.memory import create_client_server_memory_streams
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from .server import ServerBackendFactory, ToolServer, connect

logger = logging.getLogger(__name__)

IN_PROCESS_CLIENT = types.Implementation(name="Browser Bridge Proxy", version="1.0.0")


@asynccontextmanager
async def connect_in_process(
    server: ToolServer,
    client_info: types.Implementation = IN_PROCESS_CLIENT,
) -> AsyncIterator[ClientSession]:
    """Connect an initialized client session to ``server`` without a network hop.

    The server runs until the context exits, at which point its close
    observers fire.
    """
    async with create_client_server_memory_streams() as (client_streams, server_streams):
        async with anyio.create_task_group() as tg:
            tg.start_soon(server.run, server_streams[0], server_streams[1])
            try:
                async with ClientSession(
                    client_streams[0], client_streams[1], client_info=client_info
                ) as client:
                    await client.initialize()
                    yield client
            finally:
                tg.cancel_scope.cancel()


async def run_stdio(backend_factory: ServerBackendFactory) -> None:
    """Serve a single connection over stdin/stdout."""
    async with stdio_server() as (read_stream, write_stream):
        await connect(backend_factory, read_stream, write_stream, run_heartbeat=False)


class StreamableHTTPSessions:
    """ASGI app routing streamable HTTP requests by ``mcp-session-id``.

    A POST without a session id opens a new session with a fresh backend.
    Sessions run in a task group owned by :meth:`run` and leave the map
    once their connection ends.
    """

    def __init__(
        self, backend_factory: ServerBackendFactory, json_response: bool = False
    ) -> None:
        self._backend_factory = backend_factory
        self._json_response = json_response
        self._transports: dict[str, StreamableHTTPServerTransport] = {}
        self._task_group: TaskGroup | None = None

    @property
    def session_ids(self) -> list[str]:
        return list(self._transports)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield
            finally:
                self._task_group = None
                tg.cancel_scope.cancel()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if session_id:
            transport = self._transports.get(session_id)
            if transport is None:
                await PlainTextResponse("Session not found", status_code=404)(scope, receive, send)
                return
            await transport.handle_request(scope, receive, send)
            return

        if request.method != "POST":
            await PlainTextResponse("Invalid request", status_code=400)(scope, receive, send)
            return
        if self._task_group is None:
            raise RuntimeError("Streamable HTTP sessions are not running")

        transport = StreamableHTTPServerTransport(
            mcp_session_id=uuid.uuid4().hex,
            is_json_response_enabled=self._json_response,
        )
        await self._task_group.start(self._serve, transport)
        await transport.handle_request(scope, receive, send)

    async def _serve(
        self,
        transport: StreamableHTTPServerTransport,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        session_id = transport.mcp_session_id
        assert session_id is not None
        self._transports[session_id] = transport
        try:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started()
                await connect(self._backend_factory, read_stream, write_stream, run_heartbeat=True)
        except Exception:
            logger.exception(f"Streamable HTTP session {session_id} failed")
        finally:
            self._transports.pop(session_id, None)
            logger.debug(f"Streamable HTTP session {session_id} closed")


def create_http_app(backend_factory: ServerBackendFactory) -> Starlette:
    """Build a Starlette app serving one backend per SSE or streamable HTTP session."""
    sse = SseServerTransport("/messages/")
    streamable = StreamableHTTPSessions(backend_factory)

    async def handle_sse(request: Request) -> Response:
        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await connect(backend_factory, streams[0], streams[1], run_heartbeat=True)
        return Response()

    async def health(request: Request) -> PlainTextResponse:
        return PlainTextResponse("ok")

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with streamable.run():
            yield

    app = Starlette(
        routes=[
            Route("/health", endpoint=health),
            Route("/sse", endpoint=handle_sse),
            Mount("/messages/", app=sse.handle_post_message),
            Route("/mcp", endpoint=streamable),
        ],
        lifespan=lifespan,
    )
    app.state.streamable_sessions = streamable
    return app


async def run_http(backend_factory: ServerBackendFactory, host: str, port: int) -> None:
    """Serve SSE and streamable HTTP connections until interrupted."""
    app = create_http_app(backend_factory)
    url = f"http://{'localhost' if host in ('0.0.0.0', '::') else host}:{port}"
    logger.info(f"Listening on {url}, point your client at {url}/sse")
    logger.info(f"If your client supports streamable HTTP, use {url}/mcp instead")
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    await uvicorn.Server(config).serve()
