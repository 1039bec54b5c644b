"""Browser session state shared by every tool call on a connection."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, ClassVar

from .client import BridgeClient, get_windows_host
from .config import Config
from .snapshot import RefManager, render_snapshot

if TYPE_CHECKING:
    from .server import ClientVersion
    from .tools import Tool

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], BridgeClient]


def client_factory(config: Config) -> ClientFactory:
    """Return a factory producing runner clients for ``config``."""

    def create() -> BridgeClient:
        host = config.runner_host or get_windows_host()
        return BridgeClient(host, config.runner_port)

    return create


class Context:
    """Owns the runner client and element refs for one browser session.

    Every live context is tracked process-wide so that :meth:`dispose_all`
    can tear down sessions whose owner is gone.
    """

    _all_contexts: ClassVar[set[Context]] = set()

    def __init__(
        self,
        tools: Sequence[Tool],
        config: Config,
        create_client: ClientFactory,
    ) -> None:
        self.tools = list(tools)
        self.config = config
        self.client_version: ClientVersion | None = None
        self.refs = RefManager()
        self._create_client = create_client
        self._client: BridgeClient | None = None
        self._disposed = False
        Context._all_contexts.add(self)
        logger.debug("Created browser context")

    @classmethod
    async def dispose_all(cls) -> None:
        """Dispose every live context. Failures are logged per context."""
        for context in list(cls._all_contexts):
            try:
                await context.dispose()
            except Exception:
                logger.exception("Failed to dispose browser context")

    @property
    def disposed(self) -> bool:
        return self._disposed

    def client(self) -> BridgeClient:
        if self._disposed:
            raise RuntimeError("Browser context has been disposed")
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def resolve(self, ref: str) -> str:
        """Map an element ref from the last snapshot to its element ID."""
        return self.refs.resolve(ref)

    async def page_data(self) -> dict[str, Any]:
        return (await self.client().snapshot()).unwrap()

    async def snapshot(self) -> str:
        """Capture the page and render it, refreshing element refs."""
        return render_snapshot(await self.page_data(), self.refs)

    async def dispose(self) -> None:
        """Release the runner client. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        Context._all_contexts.discard(self)
        logger.debug("Disposing browser context")
        if self._client is not None:
            client, self._client = self._client, None
            await client.close()
