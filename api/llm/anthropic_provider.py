"""
Anthropic Messages API provider.

The agent speaks OpenAI-shaped messages and tool definitions; this adapter
converts them on the way out:
- system messages become the ``system`` parameter
- assistant tool calls become ``tool_use`` blocks
- consecutive tool results merge into one user turn of ``tool_result`` blocks
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from anthropic import AsyncAnthropic

from api.llm.base import (
    CancelToken,
    LLMProvider,
    LLMResponse,
    StreamAborted,
    ToolCallAccumulator,
    await_or_abort,
    iterate_until_aborted,
)
from api.schemas.agent_state import (
    ChatMessage,
    DoneChunk,
    StreamChunk,
    TokenChunk,
    TokenUsage,
    UsageChunk,
)

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOKENS = 4096


def convert_messages(messages: List[ChatMessage]) -> Tuple[str, List[Dict[str, Any]]]:
    """Split OpenAI-style history into a system prompt and Anthropic messages."""
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        content = message.get("content")

        if role == "system":
            if content:
                system_parts.append(content)
            continue

        if role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message.get("tool_call_id", ""),
                "content": content or "",
            }
            previous = converted[-1] if converted else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(item.get("type") == "tool_result" for item in previous["content"])
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        if role == "assistant" and message.get("tool_calls"):
            blocks: List[Dict[str, Any]] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for call in message["tool_calls"]:
                raw_args = call["function"].get("arguments") or "{}"
                try:
                    tool_input = json.loads(raw_args)
                except json.JSONDecodeError:
                    tool_input = {}
                blocks.append({
                    "type": "tool_use",
                    "id": call["id"],
                    "name": call["function"]["name"],
                    "input": tool_input,
                })
            converted.append({"role": "assistant", "content": blocks})
            continue

        converted.append({"role": role, "content": content or ""})

    return "\n\n".join(system_parts), converted


def convert_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """OpenAI function definitions to Anthropic tool definitions."""
    return [
        {
            "name": tool["function"]["name"],
            "description": tool["function"].get("description", ""),
            "input_schema": tool["function"].get("parameters") or {"type": "object", "properties": {}},
        }
        for tool in tools
    ]


class AnthropicProvider(LLMProvider):
    """Claude models through the official SDK."""

    provider_name = "anthropic"

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
        default_max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        super().__init__(model)
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.default_max_tokens = default_max_tokens

    def _request_kwargs(
        self,
        messages: List[ChatMessage],
        tools: Optional[List[Dict[str, Any]]],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> Dict[str, Any]:
        system, converted = convert_messages(messages)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": converted,
            "max_tokens": max_tokens or self.default_max_tokens,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = convert_tools(tools)
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    async def _complete(self, kwargs: Dict[str, Any]) -> LLMResponse:
        response = await self.client.messages.create(**kwargs)

        text_parts: List[str] = []
        tool_calls: List[Dict[str, Any]] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append({
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": json.dumps(block.input)},
                })

        message: ChatMessage = {"role": "assistant", "content": "".join(text_parts) or None}
        if tool_calls:
            message["tool_calls"] = tool_calls

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        return LLMResponse(
            message=message,
            model=response.model or self.model,
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
                cached_tokens=getattr(response.usage, "cache_read_input_tokens", 0) or 0,
            ),
            raw=response,
        )

    async def chat_completion(
        self,
        messages: List[ChatMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        return await self._complete(self._request_kwargs(messages, None, temperature, max_tokens))

    async def chat_completion_with_tools(
        self,
        messages: List[ChatMessage],
        tools: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        return await self._complete(self._request_kwargs(messages, tools, temperature, max_tokens))

    async def stream_completion_with_tools(
        self,
        messages: List[ChatMessage],
        tools: List[Dict[str, Any]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        if cancel_token is not None and cancel_token.cancelled:
            return

        kwargs = self._request_kwargs(messages, tools, temperature, max_tokens)
        try:
            stream = await await_or_abort(self.client.messages.create(**kwargs, stream=True), cancel_token)
        except StreamAborted:
            logger.debug("Stream aborted before the response", provider=self.provider_name)
            return

        accumulator = ToolCallAccumulator()
        # content block index -> zero-based tool call index
        tool_indexes: Dict[int, int] = {}
        input_tokens = 0
        cached_tokens = 0

        try:
            async for event in iterate_until_aborted(stream, cancel_token):
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug("Stream aborted", provider=self.provider_name, pending_calls=len(accumulator))
                    return

                if event.type == "message_start":
                    usage = event.message.usage
                    input_tokens = usage.input_tokens or 0
                    cached_tokens = getattr(usage, "cache_read_input_tokens", 0) or 0

                elif event.type == "content_block_start" and event.content_block.type == "tool_use":
                    tool_index = len(tool_indexes)
                    tool_indexes[event.index] = tool_index
                    start = accumulator.add(
                        tool_index,
                        call_id=event.content_block.id,
                        name=event.content_block.name,
                    )
                    if start is not None:
                        yield start

                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta" and delta.text:
                        yield TokenChunk(content=delta.text)
                    elif delta.type == "input_json_delta" and event.index in tool_indexes:
                        accumulator.add(tool_indexes[event.index], arguments=delta.partial_json)

                elif event.type == "message_delta" and event.usage is not None:
                    output_tokens = event.usage.output_tokens or 0
                    yield UsageChunk(usage=TokenUsage(
                        prompt_tokens=input_tokens,
                        completion_tokens=output_tokens,
                        total_tokens=input_tokens + output_tokens,
                        cached_tokens=cached_tokens,
                    ))

            if cancel_token is not None and cancel_token.cancelled:
                return

            for done in accumulator.finish():
                yield done
            yield DoneChunk()
        except StreamAborted:
            logger.debug("Stream aborted mid-read", provider=self.provider_name, pending_calls=len(accumulator))
        finally:
            await stream.close()
