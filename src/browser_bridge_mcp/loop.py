"""Agent loop that completes a free-text task by calling tools through an MCP client.

The model side is abstracted as an :class:`LLMDelegate`; concrete delegates
talk to the OpenAI and Anthropic HTTP APIs.
"""

from __future__ import annotations

import abc
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from mcp import ClientSession, types

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 5
DONE_TOOL = "done"
LLM_TIMEOUT = 120.0


@dataclass
class LLMToolCall:
    name: str
    arguments: dict[str, Any]
    id: str


@dataclass
class LLMTool:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class LLMMessage:
    role: Literal["user", "assistant", "tool"]
    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    is_error: bool = False


@dataclass
class LLMConversation:
    messages: list[LLMMessage]
    tools: list[LLMTool]


@dataclass
class ToolCallResult:
    tool_call_id: str
    content: str
    is_error: bool = False


class LLMDelegate(abc.ABC):
    """Adapter between the generic conversation and one model provider."""

    def create_conversation(
        self, task: str, tools: list[types.Tool], one_shot: bool
    ) -> LLMConversation:
        llm_tools = [
            LLMTool(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema,
            )
            for tool in tools
        ]
        if not one_shot:
            llm_tools.append(
                LLMTool(
                    name=DONE_TOOL,
                    description="Call this tool when the task is complete.",
                    input_schema={
                        "type": "object",
                        "properties": {
                            "result": {
                                "type": "string",
                                "description": "Summary of the outcome of the task",
                            }
                        },
                    },
                )
            )
        return LLMConversation(
            messages=[LLMMessage(role="user", content=task)], tools=llm_tools
        )

    @abc.abstractmethod
    async def make_api_call(self, conversation: LLMConversation) -> list[LLMToolCall]:
        """Ask the model for its next step, recording its reply on the conversation."""

    def add_tool_results(
        self, conversation: LLMConversation, results: list[ToolCallResult]
    ) -> None:
        for result in results:
            conversation.messages.append(
                LLMMessage(
                    role="tool",
                    content=result.content,
                    tool_call_id=result.tool_call_id,
                    is_error=result.is_error,
                )
            )

    def check_done_tool_call(self, tool_call: LLMToolCall) -> str | None:
        if tool_call.name == DONE_TOOL:
            return str(tool_call.arguments.get("result", ""))
        return None

    async def aclose(self) -> None:
        """Release provider resources."""


class _HttpDelegate(LLMDelegate):
    base_url: str

    def __init__(
        self,
        api_key: str,
        model: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(api_key),
            timeout=LLM_TIMEOUT,
            transport=transport,
        )

    @abc.abstractmethod
    def _headers(self, api_key: str) -> dict[str, str]: ...

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(path, json=body)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAIDelegate(_HttpDelegate):
    base_url = "https://api.openai.com/v1"
    default_model = "gpt-4.1"

    def __init__(
        self,
        api_key: str,
        model: str = default_model,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(api_key, model, transport)

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    async def make_api_call(self, conversation: LLMConversation) -> list[LLMToolCall]:
        messages: list[dict[str, Any]] = []
        for message in conversation.messages:
            if message.role == "user":
                messages.append({"role": "user", "content": message.content})
            elif message.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant"}
                if message.content:
                    entry["content"] = message.content
                if message.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in message.tool_calls
                    ]
                messages.append(entry)
            else:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.content,
                    }
                )

        data = await self._post(
            "/chat/completions",
            {
                "model": self.model,
                "messages": messages,
                "tools": [
                    {
                        "type": "function",
                        "function": {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.input_schema,
                        },
                    }
                    for tool in conversation.tools
                ],
                "tool_choice": "auto",
            },
        )
        reply = data["choices"][0]["message"]
        tool_calls = [
            LLMToolCall(
                name=call["function"]["name"],
                arguments=json.loads(call["function"]["arguments"] or "{}"),
                id=call["id"],
            )
            for call in reply.get("tool_calls") or []
        ]
        conversation.messages.append(
            LLMMessage(
                role="assistant", content=reply.get("content") or "", tool_calls=tool_calls
            )
        )
        return tool_calls


class ClaudeDelegate(_HttpDelegate):
    base_url = "https://api.anthropic.com/v1"
    default_model = "claude-sonnet-4-20250514"
    max_tokens = 10000

    def __init__(
        self,
        api_key: str,
        model: str = default_model,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(api_key, model, transport)

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}

    async def make_api_call(self, conversation: LLMConversation) -> list[LLMToolCall]:
        messages: list[dict[str, Any]] = []
        for message in conversation.messages:
            if message.role == "user":
                messages.append({"role": "user", "content": message.content})
            elif message.role == "assistant":
                content: list[dict[str, Any]] = []
                if message.content:
                    content.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    content.append(
                        {
                            "type": "tool_use",
                            "id": call.id,
                            "name": call.name,
                            "input": call.arguments,
                        }
                    )
                messages.append({"role": "assistant", "content": content})
            else:
                result = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                    "is_error": message.is_error,
                }
                # Consecutive tool results share one user turn.
                last = messages[-1] if messages else None
                if last and last["role"] == "user" and isinstance(last["content"], list):
                    last["content"].append(result)
                else:
                    messages.append({"role": "user", "content": [result]})

        data = await self._post(
            "/messages",
            {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "messages": messages,
                "tools": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "input_schema": tool.input_schema,
                    }
                    for tool in conversation.tools
                ],
            },
        )
        blocks = data.get("content", [])
        tool_calls = [
            LLMToolCall(name=block["name"], arguments=block.get("input") or {}, id=block["id"])
            for block in blocks
            if block.get("type") == "tool_use"
        ]
        text = "".join(block["text"] for block in blocks if block.get("type") == "text")
        conversation.messages.append(
            LLMMessage(role="assistant", content=text, tool_calls=tool_calls)
        )
        return tool_calls


def delegate_from_env(environ: dict[str, str] | None = None) -> LLMDelegate:
    """Pick a delegate based on which API key is configured."""
    env = os.environ if environ is None else environ
    if env.get("OPENAI_API_KEY"):
        return OpenAIDelegate(env["OPENAI_API_KEY"])
    if env.get("ANTHROPIC_API_KEY"):
        return ClaudeDelegate(env["ANTHROPIC_API_KEY"])
    raise RuntimeError(
        "No LLM API key found. Please set OPENAI_API_KEY or ANTHROPIC_API_KEY environment variable."
    )


def _text_of(result: types.CallToolResult) -> str:
    return "\n".join(
        part.text for part in result.content if isinstance(part, types.TextContent)
    )


async def run_task(
    delegate: LLMDelegate,
    client: ClientSession,
    task: str,
    one_shot: bool = False,
) -> list[LLMMessage]:
    """Let the model drive ``client`` until it calls ``done``.

    Returns the conversation. When the model finishes with a result, that
    result is appended as a final assistant message.
    """
    tools = (await client.list_tools()).tools
    if one_shot:
        task_content = f"Perform following task: {task}."
    else:
        task_content = f'Perform following task: {task}. Once the task is complete, call the "{DONE_TOOL}" tool.'
    conversation = delegate.create_conversation(task_content, tools, one_shot)

    for iteration in range(MAX_ITERATIONS):
        logger.debug(f"Making API call for iteration {iteration}")
        tool_calls = await delegate.make_api_call(conversation)
        if not tool_calls:
            raise RuntimeError(f'Call the "{DONE_TOOL}" tool when the task is complete.')

        results: list[ToolCallResult] = []
        for index, tool_call in enumerate(tool_calls):
            done = delegate.check_done_tool_call(tool_call)
            if done is not None:
                if done:
                    conversation.messages.append(LLMMessage(role="assistant", content=done))
                return conversation.messages

            logger.debug(f"Calling tool {tool_call.name} with {tool_call.arguments}")
            try:
                result = await client.call_tool(tool_call.name, tool_call.arguments)
                results.append(
                    ToolCallResult(
                        tool_call_id=tool_call.id,
                        content=_text_of(result),
                        is_error=bool(result.isError),
                    )
                )
            except Exception as e:
                logger.debug(f"Tool {tool_call.name} failed: {e}")
                results.append(
                    ToolCallResult(
                        tool_call_id=tool_call.id,
                        content=f'Error while executing tool "{tool_call.name}": {e}\n\nPlease try to recover and complete the task.',
                        is_error=True,
                    )
                )
                for skipped in tool_calls[index + 1 :]:
                    results.append(
                        ToolCallResult(
                            tool_call_id=skipped.id,
                            content="This tool call is skipped due to previous error.",
                            is_error=True,
                        )
                    )
                break

        delegate.add_tool_results(conversation, results)
        if one_shot:
            return conversation.messages

    raise RuntimeError("Failed to perform step, max attempts reached")


def summarize(messages: list[LLMMessage], one_shot: bool = False) -> str:
    """Flatten a conversation into text, dropping the task prompt and page snapshots."""
    lines: list[str] = []
    for message in messages[1:]:
        if not message.content.strip():
            continue
        content = message.content
        if not one_shot:
            index = content.find("### Page state")
            if index != -1:
                content = content[:index]
        lines.append(f"[{message.role}]:")
        lines.append(content)
    return "\n".join(lines)
