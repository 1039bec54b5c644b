"""Tests for the agent loop and the model provider delegates."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest  # type: ignore[import-not-found]
from conftest import ScriptedDelegate, call
from mcp import types

from browser_bridge_mcp.loop import (
    ClaudeDelegate,
    LLMMessage,
    OpenAIDelegate,
    ToolCallResult,
    delegate_from_env,
    run_task,
    summarize,
)

pytestmark = pytest.mark.anyio


class FakeClient:
    """Minimal MCP client exposing one ``echo`` tool."""

    def __init__(self, failing: tuple[str, ...] = ()) -> None:
        self.failing = failing
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def list_tools(self) -> types.ListToolsResult:
        return types.ListToolsResult(
            tools=[types.Tool(name="echo", description="Echo", inputSchema={"type": "object"})]
        )

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        self.calls.append((name, arguments))
        if name in self.failing:
            raise RuntimeError("connection dropped")
        text = f"{name} ok\n### Page state\n- Page URL: http://example.test/"
        return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def _tool_messages(messages: list[LLMMessage]) -> list[LLMMessage]:
    return [m for m in messages if m.role == "tool"]


# =============================================================================
# run_task
# =============================================================================


class TestRunTask:
    async def test_done_ends_the_loop(self) -> None:
        delegate = ScriptedDelegate([[call("done", {"result": "All good"})]])
        client = FakeClient()
        messages = await run_task(delegate, client, "check the page")  # type: ignore[arg-type]

        assert client.calls == []
        assert messages[0].content.startswith("Perform following task: check the page.")
        assert messages[-1].role == "assistant"
        assert messages[-1].content == "All good"

    async def test_tool_results_are_fed_back(self) -> None:
        delegate = ScriptedDelegate(
            [[call("echo", {"msg": "hi"})], [call("done", {"result": "Echoed"})]]
        )
        client = FakeClient()
        messages = await run_task(delegate, client, "echo hi")  # type: ignore[arg-type]

        assert client.calls == [("echo", {"msg": "hi"})]
        (tool_message,) = _tool_messages(messages)
        assert tool_message.tool_call_id == "call-echo"
        assert tool_message.content.startswith("echo ok")
        assert not tool_message.is_error

    async def test_done_tool_is_offered(self) -> None:
        delegate = ScriptedDelegate([[call("done")]])
        await run_task(delegate, FakeClient(), "anything")  # type: ignore[arg-type]
        assert delegate.conversation is not None
        assert [t.name for t in delegate.conversation.tools] == ["echo", "done"]

    async def test_error_skips_remaining_calls(self) -> None:
        delegate = ScriptedDelegate(
            [
                [call("broken"), call("echo", id="second"), call("echo", id="third")],
                [call("done", {"result": "Recovered"})],
            ]
        )
        client = FakeClient(failing=("broken",))
        messages = await run_task(delegate, client, "try it")  # type: ignore[arg-type]

        assert client.calls == [("broken", {})]
        failed, second, third = _tool_messages(messages)
        assert failed.is_error
        assert 'Error while executing tool "broken": connection dropped' in failed.content
        assert second.tool_call_id == "second"
        assert second.content == "This tool call is skipped due to previous error."
        assert third.is_error
        assert messages[-1].content == "Recovered"

    async def test_no_tool_calls_is_an_error(self) -> None:
        delegate = ScriptedDelegate([[]])
        with pytest.raises(RuntimeError, match='Call the "done" tool'):
            await run_task(delegate, FakeClient(), "idle")  # type: ignore[arg-type]

    async def test_max_iterations(self) -> None:
        delegate = ScriptedDelegate([[call("echo")] for _ in range(10)])
        client = FakeClient()
        with pytest.raises(RuntimeError, match="max attempts reached"):
            await run_task(delegate, client, "loop forever")  # type: ignore[arg-type]
        assert len(client.calls) == 5

    async def test_one_shot_returns_after_first_step(self) -> None:
        delegate = ScriptedDelegate([[call("echo")], [call("echo")]])
        client = FakeClient()
        messages = await run_task(delegate, client, "once", one_shot=True)  # type: ignore[arg-type]

        assert len(client.calls) == 1
        assert messages[0].content == "Perform following task: once."
        assert delegate.conversation is not None
        assert [t.name for t in delegate.conversation.tools] == ["echo"]


# =============================================================================
# summarize
# =============================================================================


class TestSummarize:
    def test_skips_task_prompt_and_empty_messages(self) -> None:
        messages = [
            LLMMessage(role="user", content="Perform following task: x."),
            LLMMessage(role="assistant", content="", tool_calls=[call("echo")]),
            LLMMessage(role="assistant", content="Done it"),
        ]
        assert summarize(messages) == "[assistant]:\nDone it"

    def test_trims_page_state(self) -> None:
        messages = [
            LLMMessage(role="user", content="task"),
            LLMMessage(role="tool", content="Clicked\n### Page state\n- Page URL: x"),
        ]
        summary = summarize(messages)
        assert "Clicked" in summary
        assert "Page URL" not in summary

    def test_one_shot_keeps_page_state(self) -> None:
        messages = [
            LLMMessage(role="user", content="task"),
            LLMMessage(role="tool", content="Clicked\n### Page state\n- Page URL: x"),
        ]
        assert "Page URL" in summarize(messages, one_shot=True)


# =============================================================================
# Provider delegates
# =============================================================================


class RecordingTransport:
    def __init__(self, reply: dict[str, Any]) -> None:
        self.reply = reply
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(200, json=self.reply)

    def body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


PAGE_TOOL = types.Tool(name="browser_click", description="Click", inputSchema={"type": "object"})


class TestOpenAIDelegate:
    async def test_request_and_reply(self) -> None:
        recorder = RecordingTransport(
            {
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {
                                        "name": "browser_click",
                                        "arguments": '{"ref": "@e1"}',
                                    },
                                }
                            ],
                        }
                    }
                ]
            }
        )
        delegate = OpenAIDelegate("sk-test", transport=httpx.MockTransport(recorder.handler))
        conversation = delegate.create_conversation("do it", [PAGE_TOOL], one_shot=False)
        calls = await delegate.make_api_call(conversation)

        request = recorder.requests[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = recorder.body()
        assert body["model"] == "gpt-4.1"
        assert body["messages"] == [{"role": "user", "content": "do it"}]
        assert [t["function"]["name"] for t in body["tools"]] == ["browser_click", "done"]

        assert len(calls) == 1
        assert calls[0].name == "browser_click"
        assert calls[0].arguments == {"ref": "@e1"}
        assert calls[0].id == "call_1"

        delegate.add_tool_results(conversation, [ToolCallResult("call_1", "Clicked")])
        await delegate.make_api_call(conversation)
        _, assistant, tool = recorder.body()["messages"]
        assert assistant["tool_calls"][0]["function"]["arguments"] == '{"ref": "@e1"}'
        assert tool == {"role": "tool", "tool_call_id": "call_1", "content": "Clicked"}
        await delegate.aclose()


class TestClaudeDelegate:
    async def test_request_and_reply(self) -> None:
        recorder = RecordingTransport(
            {
                "content": [
                    {"type": "text", "text": "Looking"},
                    {"type": "tool_use", "id": "tu_1", "name": "done", "input": {"result": "ok"}},
                ]
            }
        )
        delegate = ClaudeDelegate("key-test", transport=httpx.MockTransport(recorder.handler))
        conversation = delegate.create_conversation("do it", [PAGE_TOOL], one_shot=False)
        calls = await delegate.make_api_call(conversation)

        request = recorder.requests[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "key-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = recorder.body()
        assert body["max_tokens"] == 10000
        assert [t["name"] for t in body["tools"]] == ["browser_click", "done"]

        assert [c.name for c in calls] == ["done"]
        assert conversation.messages[-1].content == "Looking"
        assert delegate.check_done_tool_call(calls[0]) == "ok"
        await delegate.aclose()

    async def test_tool_results_share_one_user_turn(self) -> None:
        recorder = RecordingTransport({"content": []})
        delegate = ClaudeDelegate("key-test", transport=httpx.MockTransport(recorder.handler))
        conversation = delegate.create_conversation("do it", [PAGE_TOOL], one_shot=True)
        conversation.messages.append(
            LLMMessage(
                role="assistant",
                content="",
                tool_calls=[call("browser_click", id="a"), call("browser_click", id="b")],
            )
        )
        delegate.add_tool_results(
            conversation,
            [ToolCallResult("a", "Clicked"), ToolCallResult("b", "boom", is_error=True)],
        )
        await delegate.make_api_call(conversation)

        user, assistant, results = recorder.body()["messages"]
        assert user == {"role": "user", "content": "do it"}
        assert [block["id"] for block in assistant["content"]] == ["a", "b"]
        assert results["role"] == "user"
        assert [block["tool_use_id"] for block in results["content"]] == ["a", "b"]
        assert results["content"][1]["is_error"] is True
        await delegate.aclose()


class TestDelegateFromEnv:
    async def test_prefers_openai(self) -> None:
        delegate = delegate_from_env({"OPENAI_API_KEY": "a", "ANTHROPIC_API_KEY": "b"})
        assert isinstance(delegate, OpenAIDelegate)
        await delegate.aclose()

    async def test_falls_back_to_anthropic(self) -> None:
        delegate = delegate_from_env({"ANTHROPIC_API_KEY": "b"})
        assert isinstance(delegate, ClaudeDelegate)
        await delegate.aclose()

    async def test_missing_key(self) -> None:
        with pytest.raises(RuntimeError, match="No LLM API key found"):
            delegate_from_env({})
