"""Tests for the process-wide browser context registry."""

from __future__ import annotations

import logging

import anyio
import pytest  # type: ignore[import-not-found]

from browser_bridge_mcp.client import BridgeClient, BridgeError
from browser_bridge_mcp.config import Config
from browser_bridge_mcp.context import Context

pytestmark = pytest.mark.anyio


class CountingClient(BridgeClient):
    def __init__(self, closes: list[str], name: str, fail: bool = False) -> None:
        super().__init__("runner.test", 9876)
        self.closes = closes
        self.name = name
        self.fail = fail

    async def close(self) -> None:
        await anyio.sleep(0)
        self.closes.append(self.name)
        if self.fail:
            raise BridgeError("runner went away")


def _contexts(closes: list[str]) -> list[Context]:
    contexts = []
    for name, fail in (("first", False), ("middle", True), ("last", False)):
        context = Context(
            [], Config(), lambda name=name, fail=fail: CountingClient(closes, name, fail)
        )
        context.client()
        contexts.append(context)
    return contexts


class TestDisposeAll:
    async def test_failure_does_not_stop_the_others(self, caplog: pytest.LogCaptureFixture) -> None:
        closes: list[str] = []
        contexts = _contexts(closes)

        with caplog.at_level(logging.ERROR, logger="browser_bridge_mcp.context"):
            await Context.dispose_all()
            await Context.dispose_all()

        assert sorted(closes) == ["first", "last", "middle"]
        assert all(context.disposed for context in contexts)
        assert Context._all_contexts == set()
        failures = [r for r in caplog.records if "Failed to dispose browser context" in r.message]
        assert len(failures) == 1

    async def test_concurrent_disposal_closes_each_client_once(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        closes: list[str] = []
        contexts = _contexts(closes)

        with caplog.at_level(logging.ERROR, logger="browser_bridge_mcp.context"):
            async with anyio.create_task_group() as tg:
                tg.start_soon(Context.dispose_all)
                tg.start_soon(Context.dispose_all)
            await Context.dispose_all()

        assert sorted(closes) == ["first", "last", "middle"]
        assert all(context.disposed for context in contexts)
        assert Context._all_contexts == set()
        assert "Failed to dispose browser context" in caplog.text

    async def test_disposed_context_refuses_client(self) -> None:
        (context, *_) = _contexts([])
        await context.dispose()
        with pytest.raises(RuntimeError, match="disposed"):
            context.client()
