"""OpenAI-compatible chat provider (OpenAI, DeepSeek)."""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from openai import AsyncOpenAI

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


def usage_from_openai(usage: Any) -> Optional[TokenUsage]:
    """Normalize an OpenAI/DeepSeek usage object."""
    if usage is None:
        return None
    prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
    completion_tokens = getattr(usage, "completion_tokens", 0) or 0

    # DeepSeek reports cache hits at the top level, OpenAI under prompt_tokens_details
    cached = getattr(usage, "prompt_cache_hit_tokens", None)
    if cached is None:
        details = getattr(usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", 0) if details is not None else 0

    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=getattr(usage, "total_tokens", None) or prompt_tokens + completion_tokens,
        cached_tokens=cached or 0,
    )


class OpenAICompatibleProvider(LLMProvider):
    """
    Chat Completions adapter.

    Works against any endpoint speaking the OpenAI wire format; the profile
    decides the base URL and default model.
    """

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        provider_name: str = "openai",
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(model)
        self.provider_name = provider_name
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    def _request_kwargs(
        self,
        messages: List[ChatMessage],
        tools: Optional[List[Dict[str, Any]]],
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            kwargs["tools"] = tools
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    async def _complete(self, kwargs: Dict[str, Any]) -> LLMResponse:
        response = await self.client.chat.completions.create(**kwargs)
        choice = response.choices[0].message

        message: ChatMessage = {"role": "assistant", "content": choice.content}
        if choice.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in choice.tool_calls
            ]

        return LLMResponse(
            message=message,
            model=response.model or self.model,
            usage=usage_from_openai(response.usage),
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
            stream = await await_or_abort(
                self.client.chat.completions.create(
                    **kwargs,
                    stream=True,
                    stream_options={"include_usage": True},
                ),
                cancel_token,
            )
        except StreamAborted:
            logger.debug("Stream aborted before the response", provider=self.provider_name)
            return

        accumulator = ToolCallAccumulator()
        try:
            async for chunk in iterate_until_aborted(stream, cancel_token):
                if cancel_token is not None and cancel_token.cancelled:
                    logger.debug("Stream aborted", provider=self.provider_name, pending_calls=len(accumulator))
                    return

                usage = usage_from_openai(getattr(chunk, "usage", None))
                if usage is not None:
                    yield UsageChunk(usage=usage)

                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta

                if delta.content:
                    yield TokenChunk(content=delta.content)

                for fragment in delta.tool_calls or []:
                    function = fragment.function
                    start = accumulator.add(
                        fragment.index,
                        call_id=fragment.id,
                        name=function.name if function else None,
                        arguments=function.arguments if function else None,
                    )
                    if start is not None:
                        yield start

            if cancel_token is not None and cancel_token.cancelled:
                return

            for done in accumulator.finish():
                yield done
            yield DoneChunk()
        except StreamAborted:
            logger.debug("Stream aborted mid-read", provider=self.provider_name, pending_calls=len(accumulator))
        finally:
            await stream.close()
