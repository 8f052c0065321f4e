"""
Provider-agnostic LLM interface.

Every backend adapter normalizes its wire format into one chunk protocol
(see ``api.schemas.agent_state``):
- ``token`` chunks as text arrives
- ``tool_call_start`` the first time a tool-call index is seen
- ``usage`` when the backend reports token counts
- one ``tool_call_done`` per index, in first-seen order, once the stream ends
- a final ``done``

A cancelled stream stops yielding immediately and never flushes partial calls.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from api.schemas.agent_state import (
    ChatMessage,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolCallDoneChunk,
    ToolCallStartChunk,
)

T = TypeVar("T")


class CancelToken:
    """
    Cooperative cancellation handle for one in-flight request.

    Adapters race every network await against the token (``await_or_abort``),
    so a pending read ends as soon as ``cancel`` is called. When a task is
    bound, ``cancel`` also cancels it.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: Optional[asyncio.Task]) -> None:
        self._task = task

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self._event.set()
        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait(self) -> None:
        await self._event.wait()


class StreamAborted(Exception):
    """The cancel token fired while an adapter was waiting on the backend."""


async def await_or_abort(awaitable: Awaitable[T], cancel_token: Optional[CancelToken]) -> T:
    """
    Await ``awaitable`` unless ``cancel_token`` fires first.

    Raises:
        StreamAborted: The token fired; the pending await has been cancelled
    """
    if cancel_token is None:
        return await awaitable

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()

    if work in done:
        return work.result()
    # Let the cancelled read unwind before the caller closes the stream
    await asyncio.gather(work, return_exceptions=True)
    raise StreamAborted()


async def iterate_until_aborted(source: AsyncIterable[T], cancel_token: Optional[CancelToken]) -> AsyncIterator[T]:
    """Items of ``source``; raises ``StreamAborted`` mid-read when the token fires."""
    iterator = source.__aiter__()
    while True:
        try:
            item = await await_or_abort(iterator.__anext__(), cancel_token)
        except StopAsyncIteration:
            return
        yield item


@dataclass
class LLMResponse:
    """Normalized single-shot completion."""

    message: ChatMessage
    model: str
    usage: Optional[TokenUsage] = None
    raw: Any = None

    @property
    def content(self) -> str:
        return self.message.get("content") or ""

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [
            ToolCall(
                id=call["id"],
                name=call["function"]["name"],
                arguments=call["function"].get("arguments") or "",
            )
            for call in self.message.get("tool_calls") or []
        ]


@dataclass
class _PartialCall:
    id: str
    name: str
    fragments: List[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Assembles streamed tool-call fragments keyed by their stream index."""

    def __init__(self) -> None:
        self._calls: Dict[int, _PartialCall] = {}

    def add(
        self,
        index: int,
        call_id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> Optional[ToolCallStartChunk]:
        """
        Register one fragment.

        Returns:
            A start chunk when ``index`` is seen for the first time, else None
        """
        partial = self._calls.get(index)
        start = None
        if partial is None:
            partial = _PartialCall(id=call_id or "", name=name or "")
            self._calls[index] = partial
            start = ToolCallStartChunk(index=index, id=partial.id, name=partial.name)
        else:
            # Some backends only send the id or name after the first fragment
            if not partial.id and call_id:
                partial.id = call_id
            if not partial.name and name:
                partial.name = name
        if arguments:
            partial.fragments.append(arguments)
        return start

    def finish(self) -> List[ToolCallDoneChunk]:
        """Completed calls in first-seen order."""
        return [
            ToolCallDoneChunk(
                index=index,
                tool_call=ToolCall(id=call.id, name=call.name, arguments="".join(call.fragments)),
            )
            for index, call in self._calls.items()
        ]

    def __len__(self) -> int:
        return len(self._calls)


class LLMProvider(ABC):
    """Contract shared by every chat backend."""

    provider_name: str = "unknown"

    def __init__(self, model: str):
        self.model = model

    def get_model(self) -> str:
        return self.model

    def get_provider_name(self) -> str:
        return self.provider_name

    @abstractmethod
    async def chat_completion(
        self,
        messages: List[ChatMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        ...

    @abstractmethod
    async def chat_completion_with_tools(
        self,
        messages: List[ChatMessage],
        tools: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        ...

    @abstractmethod
    def stream_completion_with_tools(
        self,
        messages: List[ChatMessage],
        tools: List[Dict[str, Any]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Lazy, finite, non-restartable chunk stream."""
