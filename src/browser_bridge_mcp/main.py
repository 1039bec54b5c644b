"""Entry point for the browser bridge MCP server."""

from __future__ import annotations

import asyncio
import logging

from .backend import BrowserServerBackend
from .config import Config
from .context import client_factory
from .onetool import OneToolServerBackend
from .server import ServerBackendFactory
from .transport import run_http, run_stdio

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def backend_factory(config: Config) -> ServerBackendFactory:
    """Return a factory creating a fresh backend for every connection."""
    if config.one_tool:
        return lambda: OneToolServerBackend(config)
    return lambda: BrowserServerBackend(config, client_factory(config))


async def main(config: Config | None = None) -> None:
    """Run the MCP server."""
    config = config or Config.from_env()
    factory = backend_factory(config)
    if config.server_port is not None:
        logger.info("Starting browser bridge MCP server over HTTP")
        await run_http(factory, config.server_host, config.server_port)
    else:
        logger.info("Starting browser bridge MCP server over stdio")
        await run_stdio(factory)


def run() -> None:
    """Entry point for the MCP server."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
